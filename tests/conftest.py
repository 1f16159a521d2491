import os
from urllib.parse import urlsplit

import pytest


SERVER_URL = 'http://authority.test'


@pytest.fixture
def app_instance(tmp_path):
    os.environ.setdefault("FLASK_ENV", "testing")

    from app import create_app, db

    db_path = tmp_path / "authority_test.db"
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{db_path}",
        'SYNC_SERVER_TOKEN': None,
    })

    yield app

    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def client(app_instance):
    return app_instance.test_client()


class BridgeResponse:
    """Réponse au format requests construite depuis une réponse de test Flask."""

    def __init__(self, response):
        self._response = response
        self.status_code = response.status_code

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        data = self._response.get_json(silent=True)
        if data is None:
            raise ValueError("No JSON body")
        return data


class FlaskBridgeSession:
    """Session compatible requests qui route les appels vers le client de test."""

    def __init__(self, client):
        self.client = client
        self.calls = []

    @staticmethod
    def _headers(headers):
        return {k: v for k, v in (headers or {}).items() if k.lower() != 'content-type'}

    def get(self, url, headers=None, timeout=None):
        self.calls.append(('GET', url))
        return BridgeResponse(self.client.get(urlsplit(url).path, headers=self._headers(headers)))

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append(('POST', url))
        return BridgeResponse(self.client.post(urlsplit(url).path, json=json, headers=self._headers(headers)))


@pytest.fixture
def bridge(client):
    return FlaskBridgeSession(client)


@pytest.fixture
def make_store(tmp_path):
    from local_store import LocalStore

    stores = []

    def _make(name="replica"):
        store = LocalStore(str(tmp_path / f"{name}.db"))
        stores.append(store)
        return store

    yield _make

    for store in stores:
        store.close()


@pytest.fixture
def store(make_store):
    return make_store()


@pytest.fixture
def online():
    from connectivity import ManualConnectivity
    return ManualConnectivity(online=True)


@pytest.fixture
def make_client(bridge):
    from sync_client import SyncClient

    def _make(store, connectivity, session=None, **kwargs):
        kwargs.setdefault('allow_insecure', True)
        return SyncClient(store, SERVER_URL, connectivity, session=session or bridge, **kwargs)

    return _make


@pytest.fixture
def authority_rows(app_instance):
    """Lecture directe des tables de l'autorité."""
    def _rows():
        from app import RemoteTree, RemoteCollection, ensure_sync_schema
        with app_instance.app_context():
            ensure_sync_schema()
            trees = RemoteTree.query.order_by(RemoteTree.id).all()
            collections = RemoteCollection.query.order_by(RemoteCollection.id).all()
            return (
                [(t.tree_id, t.lat, t.lng, t.note) for t in trees],
                [(c.tree_id, c.cuts, c.milk_amount, c.note) for c in collections],
            )
    return _rows
