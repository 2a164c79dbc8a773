"""
Audit Engagement Workflow
SQLAlchemy extension instance shared by every model module.

Usage:
    from auditflow.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
