"""
Core modules for Token Cost Guard.

This package contains encoder lookup, local and remote token resolution,
pricing, limit guardrails, and the resolution service that ties them together.
"""
