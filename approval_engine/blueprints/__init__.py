"""
Contractor Document Approval Platform
Blueprint registry.
"""
