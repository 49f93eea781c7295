"""
Services Layer

Business logic for match reporting, standings and brackets:
- Accept domain inputs (IDs, sessions, caller identity)
- Return domain outputs (models, dataclasses)
- Do NOT depend on HTTP request/response objects
- Raise kartops.errors types; the API layer maps them to status codes
"""
