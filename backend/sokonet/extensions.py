# Overview: Flask extension instances for database, migrations, and the payment gateway client.

from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()


def get_gateway():
    """Return the payment gateway client bound to the current app."""
    return current_app.extensions["payment_gateway"]
