"""
Model package.

``db`` is the single Flask-SQLAlchemy handle shared by every model module,
service and blueprint:

    from tracker.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
