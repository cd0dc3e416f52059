"""
Contractor Document Approval Platform
Model package — shared Flask-SQLAlchemy handle.

Usage:
    from approval_engine.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
