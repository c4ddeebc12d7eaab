"""
Engine settings: pydantic models plus a YAML/env loader.
"""
