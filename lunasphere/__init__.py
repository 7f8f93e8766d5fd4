"""
LunaSphere marketing-site backend.

A single FastAPI application with:
- JWT authentication with refresh token rotation
- Multi-role access control
- Visitor analytics, contact form and services catalog
"""
