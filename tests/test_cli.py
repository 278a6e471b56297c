import json
import os
import signal

from delphi_bot.__main__ import _options_from_args, _parse_args, print_status, stop_daemon
from delphi_bot.config import load_config


def test_flags_map_to_run_options():
    args = _parse_args(["--force-key", "https://x/reports/a", "--force-key", "https://x/reports/b", "--resend", "--dry-run"])

    options = _options_from_args(args)

    assert options.force_keys == ("https://x/reports/a", "https://x/reports/b")
    assert options.resend is True
    assert options.publish is False
    assert options.forced


def test_defaults_are_a_plain_publishing_run():
    options = _options_from_args(_parse_args([]))

    assert not options.forced
    assert options.publish is True
    assert options.digest is False


def test_status_reports_lock_and_last_run(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    config = load_config()
    config.lock_path.write_text(str(os.getpid()), encoding="utf-8")
    config.status_json_path.write_text(json.dumps({"last_run_status": "DONE"}), encoding="utf-8")

    assert print_status(config) == 0

    out = json.loads(capsys.readouterr().out)
    assert out["pid"] == os.getpid()
    assert out["running"] is True
    assert out["status"] == {"last_run_status": "DONE"}


def test_resummarize_flag():
    assert _options_from_args(_parse_args(["--force-latest", "3", "--resummarize"])).resummarize is True
    assert _options_from_args(_parse_args([])).resummarize is False


def test_stop_signals_live_daemon(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    config = load_config()
    config.daemon_pid_path.write_text("4242", encoding="utf-8")
    sent = []
    monkeypatch.setattr("delphi_bot.__main__.pid_alive", lambda pid: True)
    monkeypatch.setattr("delphi_bot.__main__.os.kill", lambda pid, sig: sent.append((pid, sig)))

    assert stop_daemon(config) == 0

    assert sent == [(4242, signal.SIGTERM)]
    assert "4242" in capsys.readouterr().out


def test_stop_removes_stale_pid_file(tmp_path, monkeypatch):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    config = load_config()
    config.daemon_pid_path.write_text("4242", encoding="utf-8")
    monkeypatch.setattr("delphi_bot.__main__.pid_alive", lambda pid: False)

    assert stop_daemon(config) == 1
    assert not config.daemon_pid_path.exists()


def test_stop_without_daemon(tmp_path, monkeypatch):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))

    assert stop_daemon(load_config()) == 1
