"""
Tax Practice Operations
SQLAlchemy extension instance shared by every model module.

Usage:
    from app.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
