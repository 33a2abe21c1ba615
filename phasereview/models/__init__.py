"""
Phase Review Service
SQLAlchemy models for the reference persistence backend.

The core services never touch these models; they reach the backend through
``phasereview.integrations.backend_gateway``.  Only ``phase_store`` and the
dispatch blueprint read and write them.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
