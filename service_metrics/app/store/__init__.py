"""
Record store interface and implementations.
"""
