"""
Test package for target_encode.

Unit tests live in tests/unit; tests/integration runs whole batches against
stand-in tool executables.
"""
