#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Stockage local de la réplique (SQLite via SQLAlchemy)

Deux collections (arbres, récoltes) portant chacune un drapeau `synced`,
plus une ligne de suivi de synchronisation. Toutes les opérations acceptent
une session optionnelle pour participer à une transaction englobante.
"""

import os
import uuid
import logging
from bisect import bisect_left
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import (
    Boolean, Column, DateTime, Float, Index, Integer, String, Text,
    create_engine, event, select,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from config import DEDUP_TOLERANCE_SECONDS
from sync_protocol import parse_timestamp, utcnow, utcnow_iso

logger = logging.getLogger(__name__)

Base = declarative_base()


class Tree(Base):
    __tablename__ = 'trees'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tree_id = Column(String(255), nullable=False, unique=True, index=True)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    note = Column(Text)
    created_at = Column(String(40), nullable=False, default=utcnow_iso)
    synced = Column(Boolean, nullable=False, default=False, index=True)

    def to_payload(self):
        return {
            'tree_id': self.tree_id,
            'lat': self.lat,
            'lng': self.lng,
            'note': self.note,
        }

    def __repr__(self):
        return f"<Tree {self.id} {self.tree_id} synced={self.synced}>"


class Collection(Base):
    __tablename__ = 'collections'
    __table_args__ = (
        Index('ix_collections_tree_timestamp', 'tree_id', 'timestamp'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tree_id = Column(String(255), nullable=False, index=True)
    cuts = Column(Integer, nullable=False, default=0)
    milk_amount = Column(Float, nullable=False, default=0.0)
    note = Column(Text)
    timestamp = Column(String(40), nullable=False, default=utcnow_iso)
    synced = Column(Boolean, nullable=False, default=False, index=True)

    def to_payload(self):
        return {
            'tree_id': self.tree_id,
            'cuts': self.cuts,
            'milk_amount': self.milk_amount,
            'note': self.note,
            'timestamp': self.timestamp,
        }

    def __repr__(self):
        return f"<Collection {self.id} {self.tree_id}@{self.timestamp} synced={self.synced}>"


class SyncState(Base):
    __tablename__ = 'sync_state'

    id = Column(Integer, primary_key=True)
    device_id = Column(String(64))
    last_sync_at = Column(DateTime)
    last_success_at = Column(DateTime)
    last_sync_trigger = Column(String(20))
    last_sync_status = Column(String(20))
    last_sync_error = Column(Text)


TREE_FIELDS = {'tree_id', 'lat', 'lng', 'note', 'created_at', 'synced'}
COLLECTION_FIELDS = {'tree_id', 'cuts', 'milk_amount', 'note', 'timestamp', 'synced'}

SUCCESS_STATUSES = ('synced', 'no_changes')


def has_instant_near(instants, target, tolerance=DEDUP_TOLERANCE_SECONDS):
    """Vrai si la liste triée `instants` contient une valeur à ±tolerance de `target`."""
    window = timedelta(seconds=tolerance)
    index = bisect_left(instants, target - window)
    return index < len(instants) and instants[index] <= target + window


def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


class LocalStore:
    """Réplique locale durable des arbres et récoltes."""

    def __init__(self, db_path=None, url=None, echo=False):
        if url is None:
            if not db_path:
                raise ValueError("Chemin de base locale requis")
            directory = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(directory, exist_ok=True)
            url = f"sqlite:///{db_path}"
        self.url = url
        self.engine = create_engine(url, echo=echo, future=True)
        if self.engine.dialect.name == 'sqlite' and ':memory:' not in url:
            event.listen(self.engine, 'connect', _set_sqlite_pragma)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        Base.metadata.create_all(self.engine)

    def close(self):
        self.engine.dispose()

    @contextmanager
    def transaction(self):
        """Transaction atomique couvrant les deux collections.

        Commit en sortie normale, rollback complet sur toute exception.
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _scope(self, session=None):
        if session is not None:
            yield session
        else:
            with self.transaction() as own_session:
                yield own_session

    # ==================== ARBRES ====================

    def add_tree(self, tree_id, lat, lng, note=None, created_at=None, synced=False, session=None):
        with self._scope(session) as s:
            tree = Tree(
                tree_id=tree_id,
                lat=lat,
                lng=lng,
                note=note,
                created_at=created_at or utcnow_iso(),
                synced=bool(synced),
            )
            s.add(tree)
            s.flush()
            return tree

    def get_tree(self, pk, session=None):
        with self._scope(session) as s:
            return s.get(Tree, pk)

    def find_tree(self, tree_id, session=None):
        with self._scope(session) as s:
            return s.execute(select(Tree).where(Tree.tree_id == tree_id)).scalar_one_or_none()

    def list_trees(self, synced=None, session=None):
        with self._scope(session) as s:
            stmt = select(Tree).order_by(Tree.id)
            if synced is not None:
                stmt = stmt.where(Tree.synced == bool(synced))
            return list(s.execute(stmt).scalars())

    def next_tree_after(self, pk, session=None):
        with self._scope(session) as s:
            stmt = select(Tree).where(Tree.id > pk).order_by(Tree.id).limit(1)
            return s.execute(stmt).scalar_one_or_none()

    def update_tree(self, pk, session=None, **fields):
        return self._update(Tree, TREE_FIELDS, pk, fields, session)

    def delete_tree(self, pk, session=None):
        return self._delete(Tree, pk, session)

    # ==================== RÉCOLTES ====================

    def add_collection(self, tree_id, cuts, milk_amount, note=None, timestamp=None, synced=False, session=None):
        with self._scope(session) as s:
            collection = Collection(
                tree_id=tree_id,
                cuts=cuts,
                milk_amount=milk_amount,
                note=note,
                timestamp=timestamp or utcnow_iso(),
                synced=bool(synced),
            )
            s.add(collection)
            s.flush()
            return collection

    def get_collection(self, pk, session=None):
        with self._scope(session) as s:
            return s.get(Collection, pk)

    def list_collections(self, synced=None, tree_id=None, newest_first=False, session=None):
        with self._scope(session) as s:
            stmt = select(Collection)
            if synced is not None:
                stmt = stmt.where(Collection.synced == bool(synced))
            if tree_id is not None:
                stmt = stmt.where(Collection.tree_id == tree_id)
            stmt = stmt.order_by(Collection.id.desc() if newest_first else Collection.id)
            return list(s.execute(stmt).scalars())

    def find_collection_near(self, tree_id, timestamp, tolerance=DEDUP_TOLERANCE_SECONDS, session=None):
        """Cherche une récolte du même arbre à ±tolerance secondes.

        Les horodatages locaux illisibles sont ignorés (jamais considérés
        comme doublons).
        """
        target = parse_timestamp(timestamp)
        window = timedelta(seconds=tolerance)
        for candidate in self.list_collections(tree_id=tree_id, session=session):
            try:
                candidate_ts = parse_timestamp(candidate.timestamp)
            except ValueError:
                logger.warning(f"Horodatage local illisible ignoré: {candidate!r}")
                continue
            if abs(candidate_ts - target) <= window:
                return candidate
        return None

    def collection_instants(self, tree_id, session=None):
        """Horodatages UTC triés des récoltes d'un arbre (valeurs illisibles ignorées)."""
        with self._scope(session) as s:
            stmt = select(Collection.timestamp).where(Collection.tree_id == tree_id)
            values = list(s.execute(stmt).scalars())
        instants = []
        for value in values:
            try:
                instants.append(parse_timestamp(value))
            except ValueError:
                logger.warning(f"Horodatage local illisible ignoré: {tree_id} {value!r}")
        instants.sort()
        return instants

    def update_collection(self, pk, session=None, **fields):
        return self._update(Collection, COLLECTION_FIELDS, pk, fields, session)

    def delete_collection(self, pk, session=None):
        return self._delete(Collection, pk, session)

    # ==================== DRAPEAUX DE SYNCHRONISATION ====================

    def mark_synced(self, tree_ids=(), collection_ids=(), session=None):
        """Passe `synced` à vrai sur exactement les clés fournies."""
        tree_ids = list(tree_ids)
        collection_ids = list(collection_ids)
        with self._scope(session) as s:
            if tree_ids:
                for tree in s.execute(select(Tree).where(Tree.id.in_(tree_ids))).scalars():
                    tree.synced = True
            if collection_ids:
                stmt = select(Collection).where(Collection.id.in_(collection_ids))
                for collection in s.execute(stmt).scalars():
                    collection.synced = True
        return len(tree_ids) + len(collection_ids)

    # ==================== SUIVI DE SYNCHRONISATION ====================

    def ensure_sync_state(self, session=None):
        """Crée la ligne de suivi si absente."""
        with self._scope(session) as s:
            state = s.get(SyncState, 1)
            if not state:
                state = SyncState(id=1, device_id=uuid.uuid4().hex)
                s.add(state)
                s.flush()
            elif not state.device_id:
                state.device_id = uuid.uuid4().hex
            return state

    def get_sync_state(self):
        return self.ensure_sync_state()

    @property
    def device_id(self):
        return self.ensure_sync_state().device_id

    def record_sync_result(self, trigger, status, error=None):
        with self.transaction() as s:
            state = self.ensure_sync_state(session=s)
            now = utcnow()
            state.last_sync_at = now
            state.last_sync_trigger = trigger
            state.last_sync_status = status
            state.last_sync_error = error
            if status in SUCCESS_STATUSES:
                state.last_success_at = now
            return state

    # ==================== INTERNES ====================

    def _update(self, model, allowed, pk, fields, session):
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Champs inconnus pour {model.__tablename__}: {sorted(unknown)}")
        with self._scope(session) as s:
            obj = s.get(model, pk)
            if obj is None:
                return None
            changed = False
            for name, value in fields.items():
                if name != 'synced' and getattr(obj, name) != value:
                    changed = True
                setattr(obj, name, value)
            # Une modification locale doit repartir au prochain push
            if changed and 'synced' not in fields:
                obj.synced = False
            s.flush()
            return obj

    def _delete(self, model, pk, session):
        with self._scope(session) as s:
            obj = s.get(model, pk)
            if obj is None:
                return False
            s.delete(obj)
            return True
