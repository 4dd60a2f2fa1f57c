"""Recover vtable layouts for indirect ``call [reg + off]`` sites by tracing a live process."""

__version__ = "0.3.0"
