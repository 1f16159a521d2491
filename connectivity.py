#!/usr/bin/env python3
"""
Connectivité réseau de la réplique

L'état "en ligne" est une capacité injectée : les synchroniseurs le lisent via
`is_online()`, l'orchestrateur s'abonne au passage hors ligne -> en ligne.
"""

import logging
import threading

import requests

logger = logging.getLogger(__name__)


class Connectivity:
    """État en ligne + notification sur front montant."""

    def __init__(self, online=False):
        self._online = bool(online)
        self._lock = threading.Lock()
        self._subscribers = []

    def is_online(self):
        return self._online

    def subscribe(self, callback):
        with self._lock:
            self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback):
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def set_online(self, online):
        """Met à jour l'état; prévient les abonnés uniquement sur hors ligne -> en ligne."""
        online = bool(online)
        with self._lock:
            became_online = online and not self._online
            self._online = online
            subscribers = list(self._subscribers)
        if not became_online:
            return False
        logger.info("Connexion rétablie")
        for callback in subscribers:
            try:
                callback()
            except Exception:
                logger.exception("Erreur dans un abonné de connectivité")
        return True


class ManualConnectivity(Connectivity):
    """Connectivité pilotée par l'hôte (tests, intégration embarquée)."""


class HealthCheckMonitor(Connectivity):
    """Sonde périodiquement l'endpoint de santé de l'autorité."""

    def __init__(self, health_url, interval=20, timeout=5, session=None, headers=None):
        super().__init__(online=False)
        self.health_url = health_url
        self.interval = interval
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = headers or {}
        self._stop_event = threading.Event()
        self._thread = None

    def check(self):
        """Une sonde; retourne l'état en ligne constaté."""
        try:
            resp = self.session.get(self.health_url, headers=self.headers, timeout=self.timeout)
            online = resp.status_code == 200
        except requests.RequestException as e:
            logger.debug(f"Sonde de santé en échec: {e}")
            online = False
        was_online = self._online
        self.set_online(online)
        if was_online and not online:
            logger.warning("Connexion perdue")
        return online

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()

        def _loop():
            while not self._stop_event.is_set():
                self.check()
                self._stop_event.wait(self.interval)

        self._thread = threading.Thread(target=_loop, name='rubbertap-health', daemon=True)
        self._thread.start()

    def stop(self, timeout=None):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
