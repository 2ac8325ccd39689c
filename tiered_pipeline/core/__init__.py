"""
Core domain: models, declared schemas, validation rules and anomaly detection.
"""
