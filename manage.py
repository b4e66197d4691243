"""
Schema migrations for the agent hub relay (agents, skills, jobs, reviews,
webhook subscriptions and delivery log) via Flask-Migrate.

    flask --app manage:app db init
    flask --app manage:app db migrate -m "add reviews"
    flask --app manage:app db upgrade
    flask --app manage:app db downgrade

SQLite cannot ALTER columns in place, so migrations render in batch mode.
Money columns are Numeric(18, 6); type comparison is on so precision changes
show up in autogenerated migrations.
"""
from flask import Flask
from flask_migrate import Migrate
from models import db
from config import Config

app = Flask(__name__)
app.config.from_object(Config)
db.init_app(app)

# Model classes must be imported for autogenerate to see their tables
from models import Agent, Skill, Job, Review, WebhookSubscription, WebhookDelivery  # noqa: F401,E402

migrate = Migrate(app, db, directory='migrations', render_as_batch=True, compare_type=True)
