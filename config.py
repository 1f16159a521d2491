#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration RubberTap (serveur d'autorité et réplique terrain)

Toutes les valeurs viennent des variables d'environnement, avec des valeurs
par défaut adaptées à un poste de développement.
"""

import os
import logging
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Optional

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
INSTANCE_FOLDER = os.path.join(BASE_DIR, 'instance')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Fenêtre de tolérance pour considérer deux relevés comme identiques
DEDUP_TOLERANCE_SECONDS = 2.0

SYNC_TIMEOUT_DEFAULT = 15
SYNC_HEALTH_INTERVAL_DEFAULT = 20


def _env_flag(name, default='0'):
    return os.environ.get(name, default) == '1'


def configure_logging(log_file=None, level=logging.INFO):
    """Installe la rotation des logs et la sortie console (une seule fois)."""
    root = logging.getLogger()
    if getattr(root, '_rubbertap_configured', False):
        return root
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)
    log_file = log_file or os.environ.get('RUBBERTAP_LOG_FILE', 'rubbertap.log')
    if log_file:
        try:
            log_dir = os.path.dirname(os.path.abspath(log_file))
            os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError as e:
            logging.getLogger(__name__).warning(f"Journal fichier indisponible ({log_file}): {e}")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)
    root._rubbertap_configured = True
    return root


# ==================== SERVEUR D'AUTORITÉ ====================

def configure_server(app, overrides=None):
    """Remplit app.config pour le serveur d'autorité."""
    database_url = os.environ.get('RUBBERTAP_DATABASE_URL')
    if not database_url:
        os.makedirs(INSTANCE_FOLDER, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(INSTANCE_FOLDER, 'authority.db')}"
    app.config['SQLALCHEMY_DATABASE_URI'] = database_url
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {'pool_pre_ping': True}
    app.config['SYNC_SERVER_TOKEN'] = os.environ.get('SYNC_SERVER_TOKEN') or None
    app.config['HOST'] = os.environ.get('RUBBERTAP_HOST', '0.0.0.0')
    app.config['PORT'] = int(os.environ.get('RUBBERTAP_PORT', '5000'))
    if overrides:
        app.config.update(overrides)
    return app.config


# ==================== RÉPLIQUE TERRAIN ====================

@dataclass
class ReplicaSettings:
    """Réglages d'une réplique (appareil de collecte)."""
    local_db_path: str
    server_url: Optional[str] = None
    server_token: Optional[str] = None
    timeout: float = SYNC_TIMEOUT_DEFAULT
    health_interval: float = SYNC_HEALTH_INTERVAL_DEFAULT
    allow_insecure: bool = False

    @property
    def sync_endpoint(self):
        if not self.server_url:
            return None
        return self.server_url.rstrip('/') + '/api/sync'

    @property
    def health_endpoint(self):
        if not self.server_url:
            return None
        return self.server_url.rstrip('/') + '/api/sync/health'


def load_replica_settings():
    local_db = os.environ.get('RUBBERTAP_LOCAL_DB')
    if not local_db:
        os.makedirs(INSTANCE_FOLDER, exist_ok=True)
        local_db = os.path.join(INSTANCE_FOLDER, 'replica.db')
    return ReplicaSettings(
        local_db_path=local_db,
        server_url=os.environ.get('SYNC_SERVER_URL') or None,
        server_token=os.environ.get('SYNC_SERVER_TOKEN') or None,
        timeout=float(os.environ.get('SYNC_TIMEOUT', SYNC_TIMEOUT_DEFAULT)),
        health_interval=float(os.environ.get('SYNC_HEALTH_INTERVAL', SYNC_HEALTH_INTERVAL_DEFAULT)),
        allow_insecure=_env_flag('SYNC_ALLOW_INSECURE'),
    )


def is_https_url(url):
    return bool(url) and url.lower().startswith('https://')
