#!/usr/bin/env python3
"""
Lancement du serveur d'autorité RubberTap avec Waitress
"""

import logging
from sqlalchemy.exc import SQLAlchemyError
from waitress import serve

from app import create_app, db, ensure_sync_schema

logger = logging.getLogger(__name__)


def main():
    app = create_app()
    with app.app_context():
        try:
            ensure_sync_schema()
        except SQLAlchemyError as e:
            # Le schéma sera retenté à la première requête de synchronisation
            logger.warning(f"Base d'autorité indisponible au démarrage: {e}")
        finally:
            db.session.remove()

    host = app.config['HOST']
    port = app.config['PORT']
    logger.info('=' * 70)
    logger.info('RubberTap - serveur d\'autorité')
    logger.info(f'Synchronisation : http://{host}:{port}/api/sync')
    logger.info('=' * 70)

    # threads=8 pour gérer plusieurs appareils simultanément
    serve(app, host=host, port=port, threads=8, channel_timeout=300, url_scheme='http')


if __name__ == '__main__':
    main()
