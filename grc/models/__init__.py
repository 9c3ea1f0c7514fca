"""
GRC Core Platform
Model package: the shared SQLAlchemy handle.

Usage:
    from grc.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
