"""Sandbox core module

Runs untrusted code inside Docker sandboxes, either once (batch) or as a
long-lived PTY session. `service.get_sandbox_service()` is the entry point
for transport layers; the other modules are its building blocks.
"""
