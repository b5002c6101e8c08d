import os
import sys

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest
from playgroup.app import create_app, db
from playgroup.badges import seed_default_badges
from playgroup.models import Profile


@pytest.fixture
def app(tmp_path, monkeypatch):
    # use temporary SQLite databases for testing
    monkeypatch.setenv("PLAYGROUP_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("PLAYGROUP_LOG_DB_PATH", str(tmp_path / "test_logs.db"))
    application = create_app()
    application.config['TESTING'] = True
    with application.app_context():
        db.create_all()
        seed_default_badges(db.session)
        yield application
        db.session.remove()


@pytest.fixture
def session(app):
    return db.session


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_profile(session):
    def factory(username, role='user', password='secret'):
        profile = Profile(username=username, display_name=username.title(), role=role)
        profile.set_password(password)
        session.add(profile)
        session.commit()
        return profile
    return factory
