from core.config import Settings, TransportSettings


def test_defaults():
    s = Settings(_env_file=None)
    assert s.client.register_timeout_s == 4.0
    assert s.broker.provider == "auto"
    assert s.redis.namespace == "peerlink"
    assert s.transport.data_channel_label == "chat"


def test_nested_env_overrides(monkeypatch):
    monkeypatch.setenv("BROKER__DRAIN_TIMEOUT_S", "2.5")
    monkeypatch.setenv("REDIS__URL", "redis://cache:6379/1")
    monkeypatch.setenv("CLIENT__REGISTER_TIMEOUT_S", "1")
    s = Settings(_env_file=None)
    assert s.broker.drain_timeout_s == 2.5
    assert s.redis.url == "redis://cache:6379/1"
    assert s.client.register_timeout_s == 1.0


def test_ice_servers_accept_json_and_comma_lists():
    assert TransportSettings(ice_servers='["stun:a", "stun:b"]').ice_servers == ["stun:a", "stun:b"]
    assert TransportSettings(ice_servers="stun:a, stun:b").ice_servers == ["stun:a", "stun:b"]
    assert TransportSettings(ice_servers="").ice_servers == []
