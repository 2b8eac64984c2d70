"""
Backend adapters.

Each module drives one external agent runtime behind the BackendAdapter
contract. Modules are imported directly so a backend's SDK is only
loaded when that backend is configured.
"""
