"""auth/ -- Identity reconciliation and credential lifecycle for Open Opportunities.

Layer rule: auth/ imports stdlib, third-party libraries and core/ (settings).
It does NOT import from api/. api/ imports from auth/, not the other way around,
with the single exception of auth/dependencies.py, which is FastAPI glue.
"""
