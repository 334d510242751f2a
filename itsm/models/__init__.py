"""
ITSM Change Lifecycle Engine
SQLAlchemy handle shared by every model module.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
