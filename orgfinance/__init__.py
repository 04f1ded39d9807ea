import logging

from flask import Flask
from orgfinance.extensions import db, login_manager
from config import Config


def create_app(config_class=Config):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)

    app.logger.setLevel(getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    # User loader for Flask-Login
    from orgfinance.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    # Register blueprints
    from orgfinance.routes.auth import auth_bp
    from orgfinance.routes.organizations import organizations_bp
    from orgfinance.routes.ledger import ledger_bp
    from orgfinance.routes.members import members_bp
    from orgfinance.routes.api import api_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(organizations_bp)
    app.register_blueprint(ledger_bp)
    app.register_blueprint(members_bp)
    app.register_blueprint(api_bp)

    from orgfinance.templating import register_template_helpers
    register_template_helpers(app)

    with app.app_context():
        db.create_all()
        app.logger.debug('Database tables created')

    return app
