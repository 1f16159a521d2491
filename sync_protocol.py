#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Format d'échange de la synchronisation (commun serveur / réplique)

    {"trees": [{tree_id, lat, lng, note, created_at?}],
     "collections": [{tree_id, cuts, milk_amount, note, timestamp}]}
"""

import math
from datetime import datetime, timezone


# Horodatage UTC naïf pour compatibilité DB
def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_timestamp(value):
    """datetime -> ISO-8601 UTC à la milliseconde avec suffixe Z."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def utcnow_iso():
    return format_timestamp(datetime.now(timezone.utc))


def parse_timestamp(value):
    """Convertit un horodatage ISO-8601 en datetime UTC conscient.

    Accepte le suffixe `Z`, un décalage explicite ou une valeur naïve
    (interprétée comme UTC).
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Horodatage invalide: {value!r}")
        text = value.strip()
        if text[-1] in ('Z', 'z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Horodatage invalide: {value!r}") from None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require_tree_id(item):
    tree_id = item.get('tree_id')
    if not isinstance(tree_id, str) or not tree_id.strip():
        raise ValueError("tree_id requis")
    return tree_id.strip()


def _number(item, name, cast, minimum=None):
    value = item.get(name)
    if value is None or isinstance(value, bool):
        raise ValueError(f"{name} invalide: {value!r}")
    try:
        number = cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} invalide: {value!r}") from None
    if isinstance(number, float) and not math.isfinite(number):
        raise ValueError(f"{name} invalide: {value!r}")
    if minimum is not None and number < minimum:
        raise ValueError(f"{name} doit être >= {minimum}")
    return number


def _note(item):
    note = item.get('note')
    if note is None or note == '':
        return None
    return str(note)


def parse_tree_record(item):
    """Valide un arbre reçu. `created_at` reste optionnel (absent à l'envoi)."""
    if not isinstance(item, dict):
        raise ValueError("Arbre invalide: objet attendu")
    record = {
        'tree_id': _require_tree_id(item),
        'lat': _number(item, 'lat', float),
        'lng': _number(item, 'lng', float),
        'note': _note(item),
    }
    if item.get('created_at'):
        record['created_at'] = parse_timestamp(item['created_at'])
    return record


def parse_collection_record(item):
    if not isinstance(item, dict):
        raise ValueError("Récolte invalide: objet attendu")
    return {
        'tree_id': _require_tree_id(item),
        'cuts': _number(item, 'cuts', int, minimum=0),
        'milk_amount': _number(item, 'milk_amount', float, minimum=0),
        'note': _note(item),
        'timestamp': parse_timestamp(item.get('timestamp')),
    }


def split_batch(payload):
    """Extrait les listes `trees` et `collections` d'un lot (absentes = vides)."""
    if not isinstance(payload, dict):
        raise ValueError("Objet JSON attendu")
    trees = payload.get('trees') or []
    collections = payload.get('collections') or []
    if not isinstance(trees, list) or not isinstance(collections, list):
        raise ValueError("trees et collections doivent être des listes")
    return trees, collections


def build_push_payload(trees, collections, device_id=None):
    return {
        'device_id': device_id,
        'sent_at': utcnow_iso(),
        'trees': [tree.to_payload() for tree in trees],
        'collections': [collection.to_payload() for collection in collections],
    }
