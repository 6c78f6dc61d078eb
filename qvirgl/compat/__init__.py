"""Compatibility headers and wrappers installed into the compat directory."""
