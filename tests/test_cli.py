import pytest

from nmdcc.cli import ConsoleClient, main
from nmdcc.config import ClientConfig
from nmdcc.errors import ChatSendError
from nmdcc.events import HubEvent
from nmdcc.peer import PeerRole, PeerSession


def _client() -> ConsoleClient:
    return ConsoleClient(ClientConfig(nick="alice", connect_immediately=False))


def test_first_run_writes_config_and_exits(tmp_path, capsys) -> None:
    path = tmp_path / "nmdcc.toml"
    with pytest.raises(SystemExit) as exc:
        main(["--config", str(path)])
    assert exc.value.code == 0
    assert path.exists()
    assert str(path) in capsys.readouterr().err


def test_quit_and_blank_lines() -> None:
    client = _client()
    assert client.handle_line("\n") is True
    assert client.handle_line("/quit\n") is False
    client.close()


def test_users_and_stats(capsys) -> None:
    client = _client()
    client.hub.users.note_presence("bob")
    client.handle_line("/users")
    client.handle_line("/stats")
    client.handle_line("/nope")
    out = capsys.readouterr().out
    assert "1 users: bob" in out
    assert "nmdcc 0.3.0 stats" in out
    assert "Unknown command /nope" in out
    client.close()


def test_chat_without_hub_raises() -> None:
    client = _client()
    with pytest.raises(ChatSendError):
        client.handle_line("hello")
    client.close()


def test_events_are_printed(capsys) -> None:
    client = _client()
    client.hub.events.emit(HubEvent.PUBLIC_MESSAGE, "bob", "hi")
    client.hub.events.emit(HubEvent.PRIVATE_MESSAGE, "carol", "psst")
    out = capsys.readouterr().out
    assert "<bob> hi" in out
    assert "[pm] <carol> psst" in out
    client.close()


def test_file_list_sink(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    client = _client()
    session = PeerSession(role=PeerRole.CONNECTOR, remote_nick="bob/../x")
    client._write_file_list(session, b"BZh9")
    client._write_file_list(session, b"1AY")
    client._close_file_list(session)
    assert (tmp_path / "bob_.._x.files.xml.bz2").read_bytes() == b"BZh91AY"
    client.close()


def test_get_without_nick_prints_usage(capsys) -> None:
    client = _client()
    assert client.handle_line("/get") is True
    assert client.handle_line("/get   ") is True
    out = capsys.readouterr().out
    assert out.count("Usage: /get <nick>") == 2
    assert client.peers.connections() == []
    client.close()
