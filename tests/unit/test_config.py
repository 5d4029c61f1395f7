"""Tests for configuration loading."""

from pipewright import persistence
from pipewright.backends import get_backend
from pipewright.backends.jenkins import JenkinsBackend
from pipewright.config import load_config
from pipewright.notify import get_notifier
from pipewright.notify.redis import RedisNotifier
from pipewright.persistence import SQLiteDocumentRepository, get_repository


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
backend:
  kind: jenkins
  jenkins:
    address: http://ci.example.com:8080
    user: admin
notifier:
  kind: redis
  redis:
    host: testhost
    port: 1234
sync_interval: 2.5
"""
    )
    monkeypatch.setenv("PIPEWRIGHT_CONFIG", str(config_path))

    config = load_config()
    assert config.backend.kind == "jenkins"
    assert config.backend.jenkins.address == "http://ci.example.com:8080"
    assert config.backend.jenkins.user == "admin"
    assert config.notifier.redis.host == "testhost"
    assert config.notifier.redis.port == 1234
    assert config.sync_interval == 2.5


def test_missing_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("PIPEWRIGHT_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("PIPEWRIGHT_BACKEND", raising=False)
    monkeypatch.delenv("PIPEWRIGHT_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.backend.kind == "inmemory"
    assert config.notifier.kind == "inmemory"
    assert config.database_url is None
    assert config.backend.jenkins.build_info_uri == "/job/{job}/lastBuild/api/json"


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("PIPEWRIGHT_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("JENKINS_ADDRESS", "http://jenkins.internal:8080")
    monkeypatch.setenv("JENKINS_TOKEN", "secret")
    monkeypatch.setenv("PIPEWRIGHT_BACKEND", "jenkins")
    monkeypatch.setenv("PIPEWRIGHT_DATABASE_URL", "sqlite:///tmp/pipewright.db")

    config = load_config()
    assert config.backend.kind == "jenkins"
    assert config.backend.jenkins.address == "http://jenkins.internal:8080"
    assert config.backend.jenkins.token == "secret"
    assert config.database_url == "sqlite:///tmp/pipewright.db"


def test_get_backend_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
backend:
  kind: jenkins
  jenkins:
    address: http://confighost:8080
"""
    )
    monkeypatch.setenv("PIPEWRIGHT_CONFIG", str(config_path))
    monkeypatch.delenv("PIPEWRIGHT_BACKEND", raising=False)
    monkeypatch.delenv("JENKINS_ADDRESS", raising=False)

    backend = get_backend()
    assert isinstance(backend, JenkinsBackend)
    assert backend.config.address == "http://confighost:8080"


def test_get_notifier_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
notifier:
  kind: redis
  channel: ci-events
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("PIPEWRIGHT_CONFIG", str(config_path))
    monkeypatch.delenv("PIPEWRIGHT_NOTIFIER", raising=False)

    notifier = get_notifier()
    assert isinstance(notifier, RedisNotifier)
    assert notifier.host == "confighost"
    assert notifier.port == 6380
    assert notifier.channel == "ci-events"


def test_get_repository_from_database_url(tmp_path, monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.setenv("PIPEWRIGHT_CONFIG", str(tmp_path / "absent.yaml"))

    repo = get_repository(f"sqlite://{tmp_path / 'pw.db'}")
    assert isinstance(repo, SQLiteDocumentRepository)
    assert get_repository() is repo
