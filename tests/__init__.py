"""
Test suite for metaschema.
"""
