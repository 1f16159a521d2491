#!/usr/bin/env python3
"""
Saisie terrain sur la réplique locale

Enregistrement des arbres, saisie des récoltes, historique, arbre suivant,
recherche et suppression locale. Les enregistrements créés ici sont toujours
non synchronisés jusqu'au prochain push acquitté.
"""

import logging

from sqlalchemy.exc import IntegrityError

from sync_protocol import format_timestamp, parse_timestamp, utcnow_iso

logger = logging.getLogger(__name__)


class DuplicateTreeError(ValueError):
    """Identifiant d'arbre déjà enregistré sur cette réplique."""


def _clean_note(note):
    if note is None:
        return None
    note = str(note).strip()
    return note or None


def _coordinate(value, name, limit):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} invalide: {value!r}") from None
    if not -limit <= number <= limit:
        raise ValueError(f"{name} hors limites: {number}")
    return number


def _non_negative(value, name, cast):
    if isinstance(value, bool):
        raise ValueError(f"{name} invalide: {value!r}")
    try:
        number = cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} invalide: {value!r}") from None
    if number < 0:
        raise ValueError(f"{name} doit être positif ou nul")
    return number


def register_tree(store, tree_id, lat, lng, note=None):
    """Enregistre un nouvel arbre (non synchronisé)."""
    tree_id = (tree_id or '').strip()
    if not tree_id:
        raise ValueError("L'identifiant de l'arbre est requis")
    lat = _coordinate(lat, 'Latitude', 90)
    lng = _coordinate(lng, 'Longitude', 180)

    if store.find_tree(tree_id) is not None:
        raise DuplicateTreeError(f"L'arbre {tree_id} existe déjà")
    try:
        tree = store.add_tree(tree_id, lat, lng, note=_clean_note(note))
    except IntegrityError:
        raise DuplicateTreeError(f"L'arbre {tree_id} existe déjà") from None
    logger.info(f"Arbre {tree_id} enregistré")
    return tree


def record_collection(store, tree_id, cuts, milk_amount, note=None, timestamp=None):
    """Saisit une récolte pour un arbre (non synchronisée)."""
    tree_id = (tree_id or '').strip()
    if not tree_id:
        raise ValueError("L'identifiant de l'arbre est requis")
    cuts = _non_negative(cuts, 'Nombre de saignées', int)
    milk_amount = _non_negative(milk_amount, 'Quantité de latex', float)
    if timestamp is None:
        timestamp = utcnow_iso()
    else:
        timestamp = format_timestamp(parse_timestamp(timestamp))
    return store.add_collection(tree_id, cuts, milk_amount, note=_clean_note(note), timestamp=timestamp)


def next_tree(store, current_id):
    """Arbre suivant dans l'ordre d'enregistrement, None en fin de tournée."""
    if not current_id:
        return None
    tree = store.next_tree_after(current_id)
    if tree is None:
        logger.info("Tournée terminée")
    return tree


def tree_history(store, tree_id):
    return store.list_collections(tree_id=tree_id, newest_first=True)


def delete_collection(store, collection_id):
    """Suppression locale uniquement (jamais propagée à l'autorité)."""
    deleted = store.delete_collection(collection_id)
    if deleted:
        logger.info(f"Récolte {collection_id} supprimée localement")
    return deleted


def search_trees(store, query=''):
    """Recherche insensible à la casse sur l'identifiant ou la note."""
    trees = store.list_trees()
    query = (query or '').strip().lower()
    if not query:
        return trees
    return [
        tree for tree in trees
        if query in tree.tree_id.lower() or (tree.note and query in tree.note.lower())
    ]
