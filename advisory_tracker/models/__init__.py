"""
Advisory Tracker
SQLAlchemy extension instance shared by all domain models.

Usage:
    from advisory_tracker.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
