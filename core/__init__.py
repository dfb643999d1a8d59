"""
River Intel - Core Module
Station resolution, source cascade and the ingestion orchestrators.
"""
