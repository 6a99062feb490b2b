"""
Metric rules: models, parameter extraction, rule implementation and engine.
"""
