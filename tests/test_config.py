# =============================================================================
# Configuration and CLI Tests
# =============================================================================

import pytest

from mail_ingest import app
from mail_ingest.config import Config, ConfigError, LedgerConfig, get_xdg_config_home
from mail_ingest.imap import StaticCredentials
from mail_ingest.ingest import ConsumerFatalError, MailIngestor

from conftest import PASSWORD


class TestConfig:
    def test_save_then_load(self, config, tmp_path):
        path = config.save(tmp_path / "nested" / "config.toml")

        loaded = Config.load(path)

        assert loaded == config
        assert loaded.account.to_account().store_url == (
            "imaps://ingest%2Bbot%40example.com@imap.example.com:993/INBOX"
        )

    def test_password_never_written(self, config, tmp_path):
        config.account.password_env = "MAILBOX_PASSWORD"
        path = config.save(tmp_path / "config.toml")

        text = path.read_text()

        assert "password =" not in text
        assert 'password_env = "MAILBOX_PASSWORD"' in text

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            Config.load(tmp_path / "absent.toml")

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[account\nhost = ")

        with pytest.raises(ConfigError, match="Invalid config file"):
            Config.load(path)

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[account]\nhost = "h"\nusername = "u"\npasword = "oops"\n')

        with pytest.raises(ConfigError, match="Unknown setting"):
            Config.load(path)

    def test_defaults(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[account]\nhost = "imap.example.com"\nusername = "u"\n')

        config = Config.load(path)

        assert config.account.port == 993
        assert config.account.security == "ssl"
        assert config.polling.interval_seconds == 50.0
        assert config.polling.max_batch == 10
        assert config.retry.max_attempts == 3
        assert not config.ledger.enabled

    def test_validation_lists_every_problem(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text(
            '[account]\nsecurity = "plain"\n'
            "[polling]\ninterval_seconds = 0\nmax_batch = 0\n"
            "[retry]\nbase_delay_seconds = 10.0\nmax_delay_seconds = 1.0\n"
        )

        with pytest.raises(ConfigError) as info:
            Config.load(path)

        message = str(info.value)
        for fragment in (
            "account.host",
            "account.username",
            "account.security",
            "polling.interval_seconds",
            "polling.max_batch",
            "retry.max_delay_seconds",
        ):
            assert fragment in message

    @pytest.mark.parametrize("setting, fragment", [
        ('[account]\nhost = "h"\nusername = "u"\nport = "993"\n', "account.port must be int"),
        ('[account]\nhost = "h"\nusername = "u"\nport = true\n', "account.port must be int"),
        ('[account]\nhost = 7\nusername = "u"\n', "account.host must be str"),
        ('[account]\nhost = "h"\nusername = "u"\n[polling]\ninterval_seconds = "50"\n',
         "polling.interval_seconds must be float"),
        ('[account]\nhost = "h"\nusername = "u"\n[ledger]\nenabled = "yes"\n',
         "ledger.enabled must be bool"),
    ])
    def test_wrong_type_is_config_error(self, tmp_path, setting, fragment):
        path = tmp_path / "config.toml"
        path.write_text(setting)

        with pytest.raises(ConfigError, match=fragment):
            Config.load(path)

    def test_integer_accepted_for_float_setting(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[account]\nhost = "h"\nusername = "u"\ntimeout = 10\n')

        assert Config.load(path).account.timeout == 10

    def test_wrong_type_exits_with_config_code(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[account]\nhost = "h"\nusername = "u"\nport = "993"\n')

        code = app.main(["--config", str(path), "run", "--consumer", "test_config:handle"])

        assert code == app.EXIT_CONFIG

    def test_xdg_paths(self, monkeypatch, tmp_path):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))

        assert get_xdg_config_home() == tmp_path / "cfg" / "mail-ingest"
        assert Config.config_file_path() == tmp_path / "cfg" / "mail-ingest" / "config.toml"
        assert LedgerConfig(enabled=True).resolved_path() == (
            tmp_path / "data" / "mail-ingest" / "deliveries.db"
        )
        assert LedgerConfig(path=str(tmp_path / "x.db")).resolved_path() == tmp_path / "x.db"


# Consumers used by the CLI tests below
def handle(message):
    return True


def refuse(message):
    raise ConsumerFatalError("downstream store is read-only")


@pytest.fixture
def fake_mailbox(monkeypatch, server):
    """Make `mail-ingest run` talk to the fake server."""
    def build(config, consumer):
        return MailIngestor(
            config, consumer,
            credentials=StaticCredentials(PASSWORD),
            imap_factory=server.factory,
        )
    monkeypatch.setattr(app, "MailIngestor", build)
    return server


class TestCli:
    def test_load_consumer(self):
        assert app.load_consumer("test_config:handle") is handle

    @pytest.mark.parametrize("spec", ["no_colon", "test_config:missing", "not_a_module_xyz:f"])
    def test_load_consumer_errors(self, spec):
        with pytest.raises(ConfigError):
            app.load_consumer(spec)

    def test_init_writes_config(self, tmp_path, capsys):
        path = tmp_path / "config.toml"

        code = app.main([
            "--config", str(path),
            "init", "--username", "a+b@example.com", "--host", "imap.example.com",
        ])

        assert code == app.EXIT_OK
        config = Config.load(path)
        assert config.account.username == "a+b@example.com"
        assert "keyring set mail-ingest:default a+b@example.com" in capsys.readouterr().out

    def test_run_without_config_is_config_error(self, tmp_path):
        code = app.main([
            "--config", str(tmp_path / "absent.toml"),
            "run", "--consumer", "test_config:handle",
        ])

        assert code == app.EXIT_CONFIG

    def test_paths(self, capsys):
        assert app.main(["paths"]) == app.EXIT_OK
        assert "config.toml" in capsys.readouterr().out

    def test_run_once_prints_report(self, config, tmp_path, fake_mailbox, capsys):
        first = fake_mailbox.add("A")
        second = fake_mailbox.add("B")
        path = config.save(tmp_path / "config.toml")

        code = app.main(["--config", str(path), "run", "--once", "--consumer", "test_config:handle"])

        assert code == app.EXIT_OK
        assert "listed=2 acknowledged=2 marked=2 rejected=0 skipped=0" in capsys.readouterr().out
        assert fake_mailbox.seen(first) and fake_mailbox.seen(second)
        assert fake_mailbox.logouts == 1

    def test_run_fatal_consumer_exits_with_fatal_code(self, config, tmp_path, fake_mailbox):
        uid = fake_mailbox.add("A")
        path = config.save(tmp_path / "config.toml")

        code = app.main(["--config", str(path), "run", "--consumer", "test_config:refuse"])

        assert code == app.EXIT_FATAL
        assert not fake_mailbox.seen(uid)
        assert fake_mailbox.logouts == 1
