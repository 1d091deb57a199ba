import textwrap

import pytest

from nostr_feedz.config import AppConfig, parse_app_config, parse_env_config
from nostr_feedz.relays import DEFAULT_RELAYS


def _write(tmp_path, text, name="config.xml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


def test_parse_app_config_reads_every_section(tmp_path):
    path = _write(
        tmp_path,
        """\
        <config>
          <env>secrets.xml</env>
          <user-pubkey>npub1example</user-pubkey>
          <database>
            <connection-string>sqlite:///feeds.db</connection-string>
          </database>
          <refresh>
            <cooldown-minutes>2.5</cooldown-minutes>
            <concurrency>8</concurrency>
          </refresh>
          <retry>
            <max-attempts>4</max-attempts>
            <base-delay-ms>250</base-delay-ms>
            <max-delay-ms>2000</max-delay-ms>
          </retry>
          <relays timeout="3">
            <relay>wss://one.example</relay>
            <relay> wss://two.example </relay>
            <relay></relay>
          </relays>
          <client>
            <web-app-url>https://app.example</web-app-url>
            <poll-interval-minutes>15</poll-interval-minutes>
            <notifications-enabled>false</notifications-enabled>
            <notify-on-new-items>TRUE</notify-on-new-items>
            <max-notifications-per-refresh>5</max-notifications-per-refresh>
            <state-file>state/client.json</state-file>
          </client>
          <logging>
            <level>DEBUG</level>
            <file>logs/app.log</file>
          </logging>
        </config>
        """,
    )

    config = parse_app_config(str(path))

    assert config.env_file == str((tmp_path / "secrets.xml").resolve())
    assert config.user_pubkey == "npub1example"
    assert config.database.connection_string == "sqlite:///feeds.db"
    assert config.refresh.cooldown_minutes == 2.5
    assert config.refresh.concurrency == 8
    options = config.retry.to_options()
    assert (options.max_attempts, options.base_delay, options.max_delay) == (4, 0.25, 2.0)
    assert config.relays.urls == ["wss://one.example", "wss://two.example"]
    assert config.relays.timeout == 3.0
    assert config.client.web_app_url == "https://app.example"
    assert config.client.poll_interval_minutes == 15
    assert config.client.notifications_enabled is False
    assert config.client.notify_on_new_items is True
    assert config.client.max_notifications_per_refresh == 5
    assert config.client.state_file == str((tmp_path / "state" / "client.json").resolve())
    assert config.client.cache_connection_string == "sqlite://"
    assert config.logging.level == "DEBUG"
    assert config.logging.file == str((tmp_path / "logs" / "app.log").resolve())


def test_parse_app_config_defaults(tmp_path):
    path = _write(tmp_path, "<config />")

    config = parse_app_config(str(path))

    assert config == AppConfig()
    assert config.relays.urls == DEFAULT_RELAYS
    assert config.refresh.concurrency == 5
    assert config.retry.max_attempts == 3


def test_parse_app_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        parse_app_config(str(tmp_path / "missing.xml"))


@pytest.mark.parametrize(
    "snippet",
    [
        "<refresh><concurrency>0</concurrency></refresh>",
        "<retry><max-attempts>0</max-attempts></retry>",
        "<client><poll-interval-minutes>0</poll-interval-minutes></client>",
    ],
)
def test_parse_app_config_rejects_non_positive_values(tmp_path, snippet):
    path = _write(tmp_path, f"<config>{snippet}</config>")

    with pytest.raises(ValueError):
        parse_app_config(str(path))


def test_parse_env_config(tmp_path):
    path = _write(
        tmp_path,
        """\
        <env>
          <variable name="NOSTR_NSEC"> nsec1abc </variable>
          <variable name="EMPTY"></variable>
          <variable>no-name</variable>
        </env>
        """,
        name="secrets.xml",
    )

    assert parse_env_config(str(path)) == {"NOSTR_NSEC": "nsec1abc"}
    assert parse_env_config(None) == {}
