"""Test package for BuildPilot.

Making `tests/` a package keeps module names fully qualified so test files
sharing a basename in different directories do not collide.
"""
