"""
Flask Extensions Initialization

Shared extension instances. The metadata carries a naming convention so that
Flask-Migrate can emit named constraints (SQLite batch migrations need them
for the unique keys on devices and queue sequences).
"""
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from sqlalchemy import MetaData

NAMING_CONVENTION = {
    'ix': 'ix_%(column_0_label)s',
    'uq': 'uq_%(table_name)s_%(column_0_name)s',
    'ck': 'ck_%(table_name)s_%(constraint_name)s',
    'fk': 'fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s',
    'pk': 'pk_%(table_name)s',
}

# Database instance
db = SQLAlchemy(metadata=MetaData(naming_convention=NAMING_CONVENTION))

# Flask-Migrate instance
migrate = Migrate(render_as_batch=True)
