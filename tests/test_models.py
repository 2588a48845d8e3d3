"""Persisted credential and settings store."""

from config import CredentialKind


def test_credentials_round_trip_in_order(db):
    with db.get_db() as session:
        db.save_credentials(session, CredentialKind.YOUTUBE, ["t1", "t2", "t3"])
        db.save_credentials(session, CredentialKind.SORA, ["curl one"])

    with db.get_db() as session:
        assert db.load_credentials(session, CredentialKind.YOUTUBE) == ["t1", "t2", "t3"]
        assert db.load_credentials(session, CredentialKind.SORA) == ["curl one"]
        assert db.load_credentials(session, CredentialKind.GEMINI) == []


def test_save_replaces_pool(db):
    with db.get_db() as session:
        db.save_credentials(session, CredentialKind.YOUTUBE, ["t1", "t2"])
        db.save_credentials(session, CredentialKind.YOUTUBE, ["t2"])
        assert db.load_credentials(session, CredentialKind.YOUTUBE) == ["t2"]


def test_record_preview_hides_value(db):
    with db.get_db() as session:
        db.save_credentials(session, CredentialKind.GEMINI, ["AIzaSecretKeyValue99"])
        record = session.query(db.CredentialRecord).one()
        data = record.to_dict()

    assert data["preview"] == "...alue99"
    assert "Secret" not in str(data)


def test_settings_store_json_values(db):
    with db.get_db() as session:
        assert db.get_setting(session, "use_simulation", False) is False
        db.set_setting(session, "use_simulation", True)
        db.set_setting(session, "active_sora_index", 2)
        db.set_setting(session, "active_sora_index", 1)

    with db.get_db() as session:
        assert db.get_settings(session, ["use_simulation", "active_sora_index", "openai_key"]) == {
            "use_simulation": True,
            "active_sora_index": 1,
            "openai_key": None,
        }
        assert db.clear_setting(session, "use_simulation")
        assert db.get_setting(session, "use_simulation") is None


def test_get_db_session_dependency_closes(db):
    generator = db.get_db_session()
    session = next(generator)
    assert session.query(db.StudioSetting).count() == 0
    generator.close()
