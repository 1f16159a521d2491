#!/usr/bin/env python3
"""
API de synchronisation (serveur d'autorité)

POST /api/sync        : ingestion d'un lot (upsert arbres, ajout récoltes)
GET  /api/sync        : lecture de l'état complet de référence
GET  /api/sync/health : sonde de connectivité pour les appareils
"""

import secrets
import logging
from functools import wraps
from flask import Blueprint, request, jsonify, current_app
from sqlalchemy.exc import SQLAlchemyError

from sync_protocol import format_timestamp, parse_collection_record, parse_tree_record, split_batch

logger = logging.getLogger(__name__)

# Créer un Blueprint pour l'API de synchronisation
sync_api = Blueprint('sync_api', __name__, url_prefix='/api')


def sync_token_required(f):
    """Vérifie le jeton partagé X-Sync-Token quand le serveur en exige un."""
    @wraps(f)
    def decorated(*args, **kwargs):
        expected = current_app.config.get('SYNC_SERVER_TOKEN')
        if expected:
            provided = request.headers.get('X-Sync-Token', '')
            if not secrets.compare_digest(provided.encode('utf-8'), expected.encode('utf-8')):
                return jsonify({'success': False, 'error': 'Jeton de synchronisation invalide'}), 401
        return f(*args, **kwargs)
    return decorated


@sync_api.route('/sync/health', methods=['GET'])
def health():
    return jsonify({'status': 'ok'})


@sync_api.route('/sync', methods=['POST'])
@sync_token_required
def ingest():
    """Applique un lot poussé par un appareil, en une seule transaction."""
    from app import db, ensure_sync_schema, RemoteTree, RemoteCollection, SyncIncomingLog

    data = request.get_json(silent=True)
    try:
        raw_trees, raw_collections = split_batch(data)
        trees = [parse_tree_record(item) for item in raw_trees]
        collections = [parse_collection_record(item) for item in raw_collections]
    except ValueError as e:
        logger.warning(f"Lot de synchronisation rejeté: {e}")
        return jsonify({'success': False, 'error': str(e)}), 400

    device_id = str(data['device_id'])[:64] if data.get('device_id') else None
    try:
        ensure_sync_schema()
        for record in trees:
            # Dernier écrivain gagnant, sans comparaison d'horodatage
            tree = RemoteTree.query.filter_by(tree_id=record['tree_id']).first()
            if tree is None:
                tree = RemoteTree(tree_id=record['tree_id'])
                db.session.add(tree)
            tree.lat = record['lat']
            tree.lng = record['lng']
            tree.note = record['note']
        for record in collections:
            db.session.add(RemoteCollection(
                tree_id=record['tree_id'],
                cuts=record['cuts'],
                milk_amount=record['milk_amount'],
                note=record['note'],
                timestamp=record['timestamp'].replace(tzinfo=None),
            ))
        db.session.add(SyncIncomingLog(
            device_id=device_id,
            tree_count=len(trees),
            collection_count=len(collections),
            status='received',
        ))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("Échec de l'ingestion du lot")
        _log_failed_batch(device_id, len(trees), len(collections), e)
        return jsonify({'success': False, 'error': str(e.__cause__ or e)}), 500

    logger.info(f"Lot reçu de {device_id or 'appareil inconnu'}: "
                f"{len(trees)} arbre(s), {len(collections)} récolte(s)")
    return jsonify({'success': True, 'trees': len(trees), 'collections': len(collections)})


def _log_failed_batch(device_id, tree_count, collection_count, error):
    from app import db, SyncIncomingLog
    try:
        db.session.add(SyncIncomingLog(
            device_id=device_id,
            tree_count=tree_count,
            collection_count=collection_count,
            status='failed',
            error=str(error),
        ))
        db.session.commit()
    except SQLAlchemyError as log_error:
        db.session.rollback()
        logger.warning(f"Journal d'ingestion indisponible: {log_error}")


@sync_api.route('/sync', methods=['GET'])
@sync_token_required
def snapshot():
    """Retourne tous les arbres et récoltes connus de l'autorité."""
    from app import ensure_sync_schema, RemoteTree, RemoteCollection
    try:
        ensure_sync_schema()
        trees = RemoteTree.query.order_by(RemoteTree.id.asc()).all()
        collections = RemoteCollection.query.order_by(RemoteCollection.id.asc()).all()
    except SQLAlchemyError as e:
        logger.exception("Lecture de l'état de référence impossible")
        return jsonify({'success': False, 'error': str(e.__cause__ or e)}), 500

    return jsonify({
        'trees': [
            {
                'tree_id': tree.tree_id,
                'lat': tree.lat,
                'lng': tree.lng,
                'note': tree.note,
                'created_at': format_timestamp(tree.created_at),
            }
            for tree in trees
        ],
        'collections': [
            {
                'tree_id': col.tree_id,
                'cuts': col.cuts,
                'milk_amount': col.milk_amount,
                'note': col.note,
                'timestamp': format_timestamp(col.timestamp),
            }
            for col in collections
        ],
    })
