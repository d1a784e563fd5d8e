import mongomock
import pymongo

from config.settings import MongoSettings
from streamrelay.mongodb import connection as conn


def test_get_client_uses_settings(monkeypatch):
    captured = {}

    def fake_client(uri, **kwargs):
        captured['uri'] = uri
        captured.update(kwargs)
        return mongomock.MongoClient()

    monkeypatch.setattr(pymongo, 'MongoClient', fake_client)

    settings = MongoSettings(connection_string='mongodb://cosmos.example:10255/?ssl=true', connect_timeout=5)
    client = conn.get_client(settings)

    assert isinstance(client, mongomock.MongoClient)
    assert captured['uri'] == 'mongodb://cosmos.example:10255/?ssl=true'
    assert captured['connectTimeoutMS'] == 5000
    assert captured['appname'] == 'streamrelay'


def test_ensure_collection_creates_once():
    client = mongomock.MongoClient()

    conn.ensure_collection(client, 'db1', 'changeStreamTokens')
    conn.ensure_collection(client, 'db1', 'changeStreamTokens')

    assert client['db1'].list_collection_names() == ['changeStreamTokens']


def test_get_collection():
    client = mongomock.MongoClient()
    coll = conn.get_collection(client, 'db1', 'outputChangeStream')
    assert coll.name == 'outputChangeStream'
    assert coll.database.name == 'db1'
