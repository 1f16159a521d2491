#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Synchronisation réplique <-> autorité

- push : envoie les arbres/récoltes non synchronisés puis les marque synchronisés
- pull : fusionne l'état de l'autorité sans écraser le travail local en attente

Aucune erreur ne remonte à l'appelant : tout échec devient un SyncResult
`failed` et sera retenté au prochain déclenchement.
"""

import logging
from bisect import insort
from dataclasses import dataclass
from typing import Optional

import requests
from sqlalchemy.exc import SQLAlchemyError

from config import DEDUP_TOLERANCE_SECONDS, SYNC_TIMEOUT_DEFAULT, is_https_url
from local_store import has_instant_near
from sync_protocol import (
    build_push_payload, format_timestamp, parse_collection_record,
    parse_tree_record, split_batch,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    status: str
    sent: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    protected: int = 0
    rejected: int = 0
    error: Optional[str] = None

    @property
    def failed(self):
        return self.status == 'failed'


class SyncClient:
    """Client de synchronisation d'une réplique."""

    def __init__(self, store, server_url, connectivity, token=None,
                 timeout=SYNC_TIMEOUT_DEFAULT, allow_insecure=False, session=None,
                 tolerance=DEDUP_TOLERANCE_SECONDS):
        self.store = store
        self.server_url = server_url
        self.connectivity = connectivity
        self.timeout = timeout
        self.allow_insecure = allow_insecure
        self.tolerance = tolerance
        self.session = session or requests.Session()
        self.headers = {
            'Content-Type': 'application/json',
            'User-Agent': 'RubberTap-Sync/1.0',
        }
        if token:
            self.headers['X-Sync-Token'] = token

    @property
    def endpoint(self):
        return self.server_url.rstrip('/') + '/api/sync'

    def _precondition(self):
        """Statut court-circuit (hors ligne, configuration) ou None si la synchro peut avoir lieu."""
        if not self.connectivity.is_online():
            return 'offline'
        if not self.server_url:
            return 'config_missing'
        if not is_https_url(self.server_url) and not self.allow_insecure:
            return 'insecure_url'
        return None

    # ==================== PUSH ====================

    def push(self):
        blocked = self._precondition()
        if blocked:
            logger.debug(f"Push ignoré: {blocked}")
            return SyncResult(status=blocked)

        try:
            trees = self.store.list_trees(synced=False)
            collections = self.store.list_collections(synced=False)
        except SQLAlchemyError as e:
            logger.warning(f"Lecture locale impossible avant push: {e}")
            return SyncResult(status='failed', error=str(e))

        if not trees and not collections:
            return SyncResult(status='no_changes')

        # Clés capturées avant l'appel réseau : les saisies faites pendant
        # la requête restent non synchronisées.
        tree_ids = [tree.id for tree in trees]
        collection_ids = [collection.id for collection in collections]
        payload = build_push_payload(trees, collections, device_id=self._device_id())

        try:
            resp = self.session.post(self.endpoint, json=payload, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Push échoué (réseau): {e}")
            return SyncResult(status='failed', error=str(e))

        error = self._response_error(resp)
        if error:
            logger.warning(f"Push refusé par le serveur: {error}")
            return SyncResult(status='failed', error=error)

        try:
            sent = self.store.mark_synced(tree_ids, collection_ids)
        except SQLAlchemyError as e:
            logger.warning(f"Marquage local impossible après push: {e}")
            return SyncResult(status='failed', error=str(e))

        logger.info(f"Push réussi: {len(tree_ids)} arbre(s), {len(collection_ids)} récolte(s)")
        return SyncResult(status='synced', sent=sent)

    def _device_id(self):
        try:
            return self.store.device_id
        except SQLAlchemyError as e:
            logger.warning(f"Identifiant d'appareil indisponible: {e}")
            return None

    @staticmethod
    def _response_error(resp):
        try:
            body = resp.json()
        except ValueError:
            body = None
        if not resp.ok:
            if isinstance(body, dict) and body.get('error'):
                return f"HTTP {resp.status_code}: {body['error']}"
            return f"HTTP {resp.status_code}"
        if not isinstance(body, dict) or body.get('success') is not True:
            if isinstance(body, dict) and body.get('error'):
                return body['error']
            return "Réponse de synchronisation invalide"
        return None

    # ==================== PULL ====================

    def pull(self):
        blocked = self._precondition()
        if blocked:
            logger.debug(f"Pull ignoré: {blocked}")
            return SyncResult(status=blocked)

        try:
            resp = self.session.get(self.endpoint, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Pull échoué (réseau): {e}")
            return SyncResult(status='failed', error=str(e))

        if not resp.ok:
            logger.warning(f"Pull refusé par le serveur: HTTP {resp.status_code}")
            return SyncResult(status='failed', error=f"HTTP {resp.status_code}")

        try:
            raw_trees, raw_collections = split_batch(resp.json())
        except ValueError as e:
            logger.warning(f"État distant illisible: {e}")
            return SyncResult(status='failed', error=str(e))

        trees = self._parse_rows(raw_trees, parse_tree_record, 'Arbre')
        collections = self._parse_rows(raw_collections, parse_collection_record, 'Récolte')
        rejected = (len(raw_trees) - len(trees)) + (len(raw_collections) - len(collections))

        try:
            result = self.merge(trees, collections)
        except SQLAlchemyError as e:
            logger.warning(f"Fusion locale annulée: {e}")
            return SyncResult(status='failed', error=str(e), rejected=rejected)

        result.rejected = rejected
        logger.info(f"Pull réussi: {result.inserted} ajout(s), {result.updated} mise(s) à jour, "
                    f"{result.skipped} doublon(s), {result.protected} arbre(s) protégé(s), "
                    f"{result.rejected} ligne(s) distante(s) rejetée(s)")
        return result

    @staticmethod
    def _parse_rows(rows, parser, label):
        """Valide les lignes distantes une à une; les illisibles sont écartées."""
        parsed = []
        for item in rows:
            try:
                parsed.append(parser(item))
            except ValueError as e:
                logger.warning(f"{label} distant ignoré ({e}): {item!r}")
        return parsed

    def merge(self, trees, collections):
        """Fusionne des enregistrements distants validés, en une transaction."""
        result = SyncResult(status='synced')
        with self.store.transaction() as session:
            for record in trees:
                local = self.store.find_tree(record['tree_id'], session=session)
                if local is None:
                    self.store.add_tree(
                        record['tree_id'], record['lat'], record['lng'], note=record['note'],
                        created_at=format_timestamp(record.get('created_at')),
                        synced=True, session=session,
                    )
                    result.inserted += 1
                elif not local.synced:
                    # Modification locale non acquittée : on ne l'écrase pas
                    result.protected += 1
                elif (local.lat, local.lng, local.note) != (record['lat'], record['lng'], record['note']):
                    local.lat = record['lat']
                    local.lng = record['lng']
                    local.note = record['note']
                    result.updated += 1

            # Horodatages locaux chargés une fois par arbre, tenus triés pendant la fusion
            instants = {}
            for record in collections:
                known = instants.get(record['tree_id'])
                if known is None:
                    known = self.store.collection_instants(record['tree_id'], session=session)
                    instants[record['tree_id']] = known
                if has_instant_near(known, record['timestamp'], self.tolerance):
                    result.skipped += 1
                    continue
                self.store.add_collection(
                    record['tree_id'], record['cuts'], record['milk_amount'], note=record['note'],
                    timestamp=format_timestamp(record['timestamp']), synced=True, session=session,
                )
                insort(known, record['timestamp'])
                result.inserted += 1
        return result
