"""
Aggregation over the record store and time-series helpers.
"""
