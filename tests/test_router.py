import pytest

from nmdcc.errors import ProtocolError
from nmdcc.events import HubEvent
from nmdcc.lock import derive_key
from nmdcc.router import parse_private, parse_public, parse_redirect, parse_user_command
from nmdcc.session import ConnectionPhase


def _connected(make_hub, **overrides):
    hub, factory, events = make_hub(**overrides)
    hub.connect()
    events.clear()
    return hub, factory.last, events


def test_parse_public() -> None:
    assert parse_public("<bob> hi there") == ("bob", "hi there")
    assert parse_public("<bob>no space") is None
    assert parse_public("bob> hi") is None


def test_parse_private() -> None:
    assert parse_private("alice From: bob $<bob> hi") == ("bob", "hi")
    assert parse_private("alice From: bob") is None
    assert parse_private("alice From: bob $<bob>") is None


def test_parse_user_command() -> None:
    assert parse_user_command("1 3 Kick$<%[mynick]> !kick") == (1, 3, "Kick", "<%[mynick]> !kick")
    assert parse_user_command("255 1") == (255, 1, "", "")
    assert parse_user_command("x") is None


@pytest.mark.parametrize(
    "text, expected",
    [
        ("dchub://other.hub:412", ("other.hub", 412)),
        ("other.hub", ("other.hub", 411)),
        ("nmdc://h:1/", ("h", 1)),
        (" 10.0.0.1:4111 ", ("10.0.0.1", 4111)),
    ],
)
def test_parse_redirect(text, expected) -> None:
    assert parse_redirect(text) == expected


@pytest.mark.parametrize("text", ["", "dchub://", "h:abc"])
def test_parse_redirect_bad(text) -> None:
    with pytest.raises(ProtocolError):
        parse_redirect(text)


def test_login_sequence(make_hub) -> None:
    hub, factory, events = make_hub()
    hub.connect()
    t = factory.last
    assert t.started
    assert (t.host, t.port) == ("127.0.0.1", 411)
    assert hub.phase is ConnectionPhase.HANDSHAKING

    lock = "EXTENDEDPROTOCOLABCABCABCABCABCABC"
    t.receive(f"$Lock {lock} Pk=DCPLUSPLUS0.777|$HubName Test Hub|$Hello alice|")

    assert t.lines() == [
        "$Supports NoGetINFO UserCommand UserIP2|",
        f"$Key {derive_key(lock)}|",
        "$ValidateNick alice|",
        "$Version 1,0091|",
        "$GetNickList|",
        "$MyINFO $ALL alice <nmdcc 0.3,M:A,H:1/0/0,S:5>$ $10  $$0$|",
    ]
    assert hub.hub_name == "Test Hub"
    assert events.of(HubEvent.HUB_NAME_CHANGED) == [("Test Hub",)]
    assert events.of(HubEvent.CONNECTED) == []

    t.receive("$UserIP alice 1.2.3.4|")
    assert hub.phase is ConnectionPhase.ESTABLISHED
    assert hub.is_established
    assert events.of(HubEvent.CONNECTED) == [()]

    t.receive("$UserIP alice 1.2.3.4|")
    assert events.of(HubEvent.CONNECTED) == [()]


def test_bare_login_scenario(make_hub) -> None:
    hub, factory, events = make_hub(nick="me")
    hub.connect()
    t = factory.last
    t.receive("$Lock EXTENDEDPK|$Hello me|$UserIP|")

    lines = t.lines()
    assert lines[1] == f"$Key {derive_key('EXTENDEDPK')}|"
    assert lines[3:] == [
        "$Version 1,0091|",
        "$GetNickList|",
        "$MyINFO $ALL me <nmdcc 0.3,M:A,H:1/0/0,S:5>$ $10  $$0$|",
    ]
    assert events.of(HubEvent.CONNECTED) == [()]


def test_key_with_escaped_bytes_is_sent_as_latin1(make_hub) -> None:
    hub, t, _ = _connected(make_hub)
    t.receive("$Lock HELLO2 Pk=x|")
    assert t.written[1] == b"$Key \x03\xd0\x90/%DCN000%/0\xd7|"


def test_bad_lock_is_malformed(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("$Lock A|")
    assert t.written == []
    assert hub.stats.get("commands_malformed") == 1
    assert any(args[0].startswith("Malformed command") for args in events.of(HubEvent.DEBUG))


def test_repeated_hello_does_not_resend_login(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("$Lock AB|$Hello alice|")
    sent = len(t.written)
    t.receive("$Hello alice|")
    assert len(t.written) == sent
    assert "alice" in hub.users


def test_new_lock_rearms_hello(make_hub) -> None:
    hub, t, _ = _connected(make_hub)
    t.receive("$Lock AB|$Hello alice|")
    t.receive("$Lock AB|$Hello alice|")
    assert t.lines().count("$Version 1,0091|") == 2


def test_hello_for_other_user_joins(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("$Hello bob|")
    assert events.of(HubEvent.USER_JOINED) == [("bob",)]
    assert t.written == []


def test_public_and_system_messages(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("<bob> hi &#124; there|Welcome &amp; enjoy|<broken|")
    assert events.of(HubEvent.PUBLIC_MESSAGE) == [("bob", "hi | there")]
    assert events.of(HubEvent.SYSTEM_MESSAGE) == [("Welcome & enjoy",), ("<broken",)]


def test_private_message(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("$To: alice From: bob $<bob> hi &#36;5|")
    assert events.of(HubEvent.PRIVATE_MESSAGE) == [("bob", "hi $5")]


def test_private_message_malformed(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("$To: alice From: bob|")
    assert events.of(HubEvent.PRIVATE_MESSAGE) == []
    assert hub.stats.get("commands_malformed") == 1


def test_my_info(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    raw = "$ALL carol desc<tag,M:A,H:1/0/0,S:5>$ $10  $$12345$"
    t.receive(f"$MyINFO {raw}|")
    assert events.names() == [HubEvent.USER_JOINED, HubEvent.USER_UPDATED]
    assert events.of(HubEvent.USER_UPDATED) == [(raw,)]
    rec = hub.users.get("carol")
    assert rec.description == "desc"
    assert rec.share_size == "12345"

    events.clear()
    t.receive(f"$MyINFO {raw}|")
    assert events.names() == [HubEvent.USER_UPDATED]


def test_my_info_malformed(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("$MyINFO garbage|")
    assert len(hub.users) == 0
    assert hub.stats.get("commands_malformed") == 1


def test_nick_list_and_quit(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("$NickList bob$$carol$$|")
    assert hub.users.nicks() == ["bob", "carol"]

    t.receive("$Quit nobody|")
    assert events.of(HubEvent.USER_DEPARTED) == []

    t.receive("$Quit bob|")
    assert events.of(HubEvent.USER_DEPARTED) == [("bob",)]
    assert hub.users.nicks() == ["carol"]


def test_get_pass(make_hub) -> None:
    hub, t, _ = _connected(make_hub, password="secret")
    t.receive("$GetPass|")
    assert t.lines() == ["$MyPass secret|"]


def test_password_is_not_echoed_to_debug_output(make_hub, caplog) -> None:
    hub, t, events = _connected(make_hub, password="secret")
    with caplog.at_level("DEBUG", logger="nmdcc"):
        t.receive("$GetPass|")
    assert t.lines() == ["$MyPass secret|"]
    debug = [text for (text,) in events.of(HubEvent.DEBUG)]
    assert "SENDING: $MyPass ***|" in debug
    assert not any("secret" in text for text in debug)
    assert "secret" not in caplog.text


@pytest.mark.parametrize(
    "password, expected",
    [("secret", "Password incorrect."), ("", "Nick already in use.")],
)
def test_validate_denide(make_hub, password, expected) -> None:
    hub, t, events = _connected(make_hub, password=password)
    t.receive("$ValidateDenide alice|")
    assert events.of(HubEvent.SYSTEM_MESSAGE) == [(expected,)]


def test_hub_is_full_and_bad_pass(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("$HubIsFull|$BadPass|")
    assert events.of(HubEvent.SYSTEM_MESSAGE) == [("Hub is full.",), ("Password incorrect.",)]


def test_user_command(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("$UserCommand 1 3 Kick$<%[mynick]> !kick %[nick]&#124;|$UserCommand x|")
    assert events.of(HubEvent.USER_COMMAND) == [
        (1, 3, "Kick", "<%[mynick]> !kick %[nick]|")
    ]


def test_unhandled_and_inert_commands(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("$Foo bar|$Supports NoHello|$HubTopic hi|")
    assert events.of(HubEvent.DEBUG) == [('Unhandled "$Foo"',)]
    assert hub.stats.get("commands_unhandled") == 1
    assert hub.stats.get("commands_in") == 3


def test_empty_commands_are_skipped(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("|||")
    assert hub.stats.get("commands_in") == 0
    assert events.seen == []


def test_connect_to_me_and_search_result_forwarded(make_hub) -> None:
    hub, t, events = _connected(make_hub)
    t.receive("$ConnectToMe alice 1.2.3.4:5000|$SR bob file.txt\x05100 1/2\x05TTH:X (1.2.3.4:411)|")
    assert events.of(HubEvent.CONNECT_TO_ME) == [("alice 1.2.3.4:5000",)]
    assert events.of(HubEvent.SEARCH_RESULT) == [
        ("bob file.txt\x05100 1/2\x05TTH:X (1.2.3.4:411)",)
    ]


def test_force_move_ignored(make_hub) -> None:
    hub, factory, events = make_hub()
    hub.connect()
    factory.last.receive("$ForceMove other.hub:412|")
    assert len(factory.created) == 1
    assert ("Ignoring redirect request for 'other.hub:412'",) in events.of(HubEvent.DEBUG)


def test_force_move_followed(make_hub) -> None:
    hub, factory, events = make_hub(follow_redirects=True)
    hub.connect()
    first = factory.last
    first.receive("$ForceMove dchub://other.hub:412|$Hello late|")

    assert len(factory.created) == 2
    assert first.destroyed
    second = factory.last
    assert (second.host, second.port) == ("other.hub", 412)
    assert second.started
    assert ("Redirecting hub...",) in events.of(HubEvent.SYSTEM_MESSAGE)
    # Commands after the redirect belong to the old connection.
    assert "late" not in hub.users
    assert hub.stats.get("redirects") == 1


def test_force_move_bad_target(make_hub) -> None:
    hub, factory, events = make_hub(follow_redirects=True)
    hub.connect()
    factory.last.receive("$ForceMove host:notaport|")
    assert len(factory.created) == 1
    assert hub.stats.get("commands_malformed") == 1
