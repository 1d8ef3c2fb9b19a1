"""Tests for the command-line interface."""

from pnplink import cli


def test_show_config_redacts_secrets(tmp_path, capsys):
    config_path = tmp_path / "pnplink.cfg"
    config_path.write_text(
        "[hub]\nconnection_string = HostName=h.net;SharedAccessKeyName=o;SharedAccessKey=YWJj\n"
        "[relay]\npassword = hunter2\n",
        encoding="utf-8",
    )

    exit_code = cli.main(["--config", str(config_path), "show-config"])

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "[hub]" in output
    assert "SharedAccessKey" not in output
    assert "hunter2" not in output
    assert "connection_string = <redacted>" in output


def test_device_without_connection_string_fails(tmp_path, monkeypatch):
    monkeypatch.delenv("IOTHUB_DEVICE_CONNECTION_STRING", raising=False)
    monkeypatch.setattr("pnplink.app.configure_logging", lambda *args, **kwargs: None)

    exit_code = cli.main(["--config", str(tmp_path / "missing.cfg"), "device"])

    assert exit_code == 1
