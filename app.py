#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RubberTap - Serveur d'autorité
Reçoit les lots poussés par les appareils terrain et expose l'état de référence.
"""

import logging
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import inspect as sa_inspect, text

from config import configure_logging, configure_server
from sync_protocol import utcnow

logger = logging.getLogger(__name__)

# Initialisation de la base de données (liée à l'application dans create_app)
db = SQLAlchemy()


# ==================== TABLES DE L'AUTORITÉ ====================

class RemoteTree(db.Model):
    __tablename__ = 'trees'

    id = db.Column(db.Integer, primary_key=True)
    tree_id = db.Column(db.String(255), unique=True, nullable=False)
    lat = db.Column(db.Float)
    lng = db.Column(db.Float)
    note = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow)

class RemoteCollection(db.Model):
    __tablename__ = 'collections'

    id = db.Column(db.Integer, primary_key=True)
    tree_id = db.Column(db.String(255), index=True)
    cuts = db.Column(db.Integer)
    milk_amount = db.Column(db.Float)
    note = db.Column(db.Text)
    timestamp = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)

class SyncIncomingLog(db.Model):
    __tablename__ = 'sync_incoming_log'

    id = db.Column(db.Integer, primary_key=True)
    received_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    device_id = db.Column(db.String(64))
    tree_count = db.Column(db.Integer, default=0)
    collection_count = db.Column(db.Integer, default=0)
    status = db.Column(db.String(20), default='received')
    error = db.Column(db.Text)

SYNC_TABLES = (RemoteTree, RemoteCollection, SyncIncomingLog)

# Colonnes ajoutées après la première version du schéma
LEGACY_COLUMNS = {
    'trees': {'note': 'TEXT'},
    'collections': {'note': 'TEXT'},
}

_schema_ready = set()

def ensure_sync_schema():
    """Crée les tables de synchronisation si absentes (une fois par base et par processus)."""
    engine = db.engine
    key = str(engine.url)
    if key in _schema_ready:
        return False
    db.metadata.create_all(engine, tables=[model.__table__ for model in SYNC_TABLES], checkfirst=True)
    inspector = sa_inspect(engine)
    for table_name, columns in LEGACY_COLUMNS.items():
        existing = {column['name'] for column in inspector.get_columns(table_name)}
        for column_name, column_type in columns.items():
            if column_name in existing:
                continue
            with engine.begin() as conn:
                conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}"))
            logger.info(f"Colonne {table_name}.{column_name} ajoutée")
    _schema_ready.add(key)
    logger.info("Schéma de synchronisation prêt")
    return True

def reset_schema_cache():
    _schema_ready.clear()


def create_app(overrides=None):
    """Construit l'application Flask du serveur d'autorité."""
    app = Flask(__name__)
    configure_server(app, overrides)
    if not app.config.get('TESTING'):
        configure_logging()
    db.init_app(app)

    from sync_api import sync_api
    app.register_blueprint(sync_api)

    if not app.config.get('SYNC_SERVER_TOKEN'):
        logger.warning("⚠️  SYNC_SERVER_TOKEN non défini. Les appareils peuvent synchroniser sans jeton.")
    return app
