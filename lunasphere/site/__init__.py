"""
Public site features: analytics, visitors, contact form, services catalog.
"""
