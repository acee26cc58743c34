"""Core domain package for cityscope.

Core holds extraction, geocoding, geometry, dedup and notification matching
logic without any storage, AI vendor or push transport specific code.
"""
