from deltarelay.config import (
    DEFAULT_DELTA_URL,
    AuthSettings,
    Config,
    Delta,
    SecuritySettings,
    load_config,
)


def test_load_config_uses_service_name():
    config = load_config("websocket-service")
    assert config.service_name == "websocket-service"


def test_load_config_defaults():
    config = load_config("svc")
    assert config.environment == "local"
    assert config.log_level == "info"
    assert config.http_port == 8083
    assert config.grpc_port == 9093


def test_load_config_delta_defaults():
    delta = load_config("svc").delta
    assert delta.enabled is True
    assert delta.url == "wss://socket.india.delta.exchange"
    assert delta.url == DEFAULT_DELTA_URL
    assert delta.channels == ["v2/ticker"]
    assert delta.product_ids == ["BTCUSD"]
    assert delta.reconnect_max == 5


def test_load_config_leaves_other_sections_at_zero():
    config = load_config("svc")
    assert config.metrics.enabled is False
    assert config.metrics.endpoint == ""
    assert config.websocket.check_origin is False
    assert config.websocket.max_message_size == 0
    assert config.websocket.auth == AuthSettings()
    assert config.security == SecuritySettings()


def test_load_config_returns_independent_lists():
    first = load_config("a")
    first.delta.channels.append("extra")
    second = load_config("b")
    assert second.delta.channels == ["v2/ticker"]


def test_cors_origins_default_to_wildcard():
    assert Config().cors_allowed_origins() == ["*"]


def test_cors_origins_split_on_commas():
    config = Config(
        security=SecuritySettings(
            cors_allowed_origins="https://a.example.com,https://b.example.com"
        )
    )
    assert config.cors_allowed_origins() == [
        "https://a.example.com",
        "https://b.example.com",
    ]


def test_cors_single_origin():
    config = Config(security=SecuritySettings(cors_allowed_origins="https://a.example.com"))
    assert config.cors_allowed_origins() == ["https://a.example.com"]


def test_delta_zero_values():
    delta = Delta()
    assert delta.enabled is False
    assert delta.url == ""
    assert delta.channels == []
    assert delta.product_ids == []
    assert delta.reconnect_max == 0