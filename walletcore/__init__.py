import logging
import os

from flask import Flask

from walletcore.extensions import db
from config import Config


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )

    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Signal receivers
    from walletcore.signals import transaction_completed, notification_requested
    from walletcore.services.rewards_service import accrue_rewards_for_transaction
    from walletcore.services.notification_service import log_notification

    transaction_completed.connect(accrue_rewards_for_transaction)
    notification_requested.connect(log_notification)

    # Background job + CLI
    from walletcore.jobs import ScheduledTransferJob
    from walletcore.cli import transfers_cli

    job = ScheduledTransferJob(app)
    app.cli.add_command(transfers_cli)

    with app.app_context():
        from walletcore import models  # noqa: F401
        db.create_all()

    if app.config.get('SCHEDULER_ENABLED'):
        job.start()

    return app
