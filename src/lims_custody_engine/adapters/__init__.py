"""Adapters — collaborator implementations for the custody engine.

Contains:
- memory_store.py  — append-only in-memory Resource Store
- fhir_store.py    — FHIR REST Resource Store client (httpx)
- identity.py      — context-bound and static Identity Providers
"""

__all__: list[str] = []
