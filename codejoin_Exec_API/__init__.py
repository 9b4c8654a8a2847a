"""
Top-level package initializer for codejoin_Exec_API.

The secure execution core of the codejoin collaborative editor: batch runs
and interactive terminal sessions inside isolated Docker sandboxes.
"""

__version__ = "0.1.0"
