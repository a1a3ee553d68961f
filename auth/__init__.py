"""auth/ -- Identity, credential, and authorization core for Sentinel.

Layer rule: auth/ imports stdlib, third-party libraries, and core/ only.
It does NOT import from api/. api/ imports from auth/, not the other way around.
auth/dependencies.py is the one module that touches FastAPI, because it is the
adapter between the gate and FastAPI's dependency injection.
"""
