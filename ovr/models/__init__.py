"""
OVR Tracker: SQLAlchemy extension instance.

All model modules import ``db`` from here:

    from ovr.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
