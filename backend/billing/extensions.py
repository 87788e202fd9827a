# Overview: Flask extension instances for database and migrations.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()

# Key under app.extensions holding an optional TaxCalculator override.
TAX_CALCULATOR_KEY = "billing.tax_calculator"
