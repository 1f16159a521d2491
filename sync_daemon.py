#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Daemon de synchronisation offline
- Au démarrage : pull puis push
- Au retour de la connexion : push puis pull
- Une seule séquence à la fois (les déclenchements concurrents sont ignorés)
"""

import sys
import time
import logging
import threading

from config import configure_logging, load_replica_settings
from connectivity import HealthCheckMonitor
from local_store import LocalStore
from sync_client import SyncClient

logger = logging.getLogger(__name__)

STARTUP = 'startup'
ONLINE = 'online'


class SyncOrchestrator:
    """Enchaîne push/pull selon le déclencheur."""

    def __init__(self, client, connectivity, store=None):
        self.client = client
        self.connectivity = connectivity
        self.store = store if store is not None else client.store
        self._in_flight = threading.Lock()
        self._started = False

    def start(self):
        """S'abonne au retour de connexion puis lance la séquence de démarrage."""
        if not self._started:
            self.connectivity.subscribe(self.on_online)
            self._started = True
        return self.on_startup()

    def stop(self):
        if self._started:
            self.connectivity.unsubscribe(self.on_online)
            self._started = False

    def on_startup(self):
        return self._run(STARTUP, (self.client.pull, self.client.push))

    def on_online(self):
        return self._run(ONLINE, (self.client.push, self.client.pull))

    @property
    def busy(self):
        return self._in_flight.locked()

    def _run(self, trigger, steps):
        if not self._in_flight.acquire(blocking=False):
            logger.info(f"Synchronisation déjà en cours, déclenchement '{trigger}' ignoré")
            return None
        try:
            results = []
            status, error = 'failed', None
            try:
                for step in steps:
                    results.append(step())
                status, error = _summarize(results)
            except Exception as e:
                logger.exception(f"Erreur de synchronisation ({trigger})")
                error = str(e)
            # Hors ligne : aucune écriture locale, même pas le suivi
            if status != 'offline':
                self._record(trigger, status, error)
            return results
        finally:
            self._in_flight.release()

    def _record(self, trigger, status, error):
        try:
            self.store.record_sync_result(trigger, status, error)
        except Exception as e:
            logger.warning(f"Impossible d'enregistrer l'état de synchronisation: {e}")


def _summarize(results):
    """Statut global d'une séquence : le pire des statuts individuels."""
    errors = [r.error for r in results if r.failed and r.error]
    statuses = [r.status for r in results]
    if 'failed' in statuses:
        return 'failed', '; '.join(errors) or 'Erreur inconnue'
    if 'synced' in statuses:
        return 'synced', None
    if all(s == 'no_changes' for s in statuses):
        return 'no_changes', None
    # offline / config_missing / insecure_url : rien n'a été tenté
    return next(s for s in statuses if s not in ('synced', 'no_changes')), None


def build_orchestrator(settings):
    store = LocalStore(settings.local_db_path)
    headers = {'X-Sync-Token': settings.server_token} if settings.server_token else None
    monitor = HealthCheckMonitor(
        settings.health_endpoint,
        interval=settings.health_interval,
        timeout=settings.timeout,
        headers=headers,
    )
    client = SyncClient(
        store,
        settings.server_url,
        monitor,
        token=settings.server_token,
        timeout=settings.timeout,
        allow_insecure=settings.allow_insecure,
    )
    return SyncOrchestrator(client, monitor, store), monitor


def main():
    configure_logging()
    settings = load_replica_settings()
    if not settings.server_url:
        logger.error("SYNC_SERVER_URL non défini, daemon de synchronisation arrêté")
        return 1

    orchestrator, monitor = build_orchestrator(settings)
    # Première sonde synchrone pour que la séquence de démarrage connaisse l'état réel
    monitor.check()
    orchestrator.start()
    monitor.start()
    logger.info(f"Daemon de synchronisation actif ({settings.server_url})")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Arrêt demandé")
    finally:
        monitor.stop(timeout=5)
        orchestrator.stop()
        orchestrator.store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
