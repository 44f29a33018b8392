"""Shared Flask extensions used by the find ledger and trail blueprints."""

from flask_sqlalchemy import SQLAlchemy

# SQLAlchemy instance initialised in app.create_app so blueprints/services can import `db`.
db = SQLAlchemy()
