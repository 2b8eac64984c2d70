"""
Cowork: a multi-backend agent orchestrator.

See cowork/api/main.py for the HTTP entry point.
"""
__version__ = "1.0.0"
