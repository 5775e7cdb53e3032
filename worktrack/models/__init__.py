"""
WorkTrack — Work-Order Ticket Tracker
Database models package.

Every model module imports ``db`` from here so that Flask-SQLAlchemy and
Flask-Migrate see a single metadata object.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
