"""
Authentication for LunaSphere.

This package provides:
- User registration and login
- Access/refresh JWT handling and refresh token revocation
- Role-based access control
"""
