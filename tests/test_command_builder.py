import pytest

from classes.command_builder import CommandBuilder
from classes.relay_errors import ProviderError


@pytest.fixture
def builder() -> CommandBuilder:
    return CommandBuilder()


def test_json_envelope(builder) -> None:
    reply = '{"explainer": "A red door.", "code": "local door = Instance.new(\\"Part\\")"}'

    command = builder.build("make a door", reply)

    assert command.type == "RUN_LUA"
    assert command.payload["source"] == 'local door = Instance.new("Part")'
    assert command.payload["explainer"] == "A red door."
    assert command.payload["prompt"] == "make a door"


def test_fenced_envelope_with_raw_newlines_in_code(builder) -> None:
    reply = (
        "```json\n"
        '{\n  "explainer": "Door",\n'
        '  "code": "local door = Instance.new(\\"Part\\")\ndoor.Parent = workspace"\n}\n'
        "```"
    )

    explainer, code = builder.parse_reply(reply)

    assert explainer == "Door"
    assert "Instance.new" in code
    assert "door.Parent = workspace" in code


def test_prose_with_lua_fence(builder) -> None:
    reply = "Here is a door.\n```lua\nlocal door = Instance.new('Part')\n```"

    explainer, code = builder.parse_reply(reply)

    assert explainer == "Here is a door."
    assert code == "local door = Instance.new('Part')"


def test_bare_lua(builder) -> None:
    explainer, code = builder.parse_reply("print('hello from studio')\n")

    assert explainer == ""
    assert code == "print('hello from studio')"


@pytest.mark.parametrize("reply", ["", "   ", None, '{"explainer": "no code here"}'])
def test_reply_without_code_is_dropped(builder, reply) -> None:
    with pytest.raises(ProviderError):
        builder.build("make a door", reply)


def test_commands_are_immutable_and_unique(builder) -> None:
    a = builder.build("p", "print(1)")
    b = builder.build("p", "print(1)")

    assert a.id != b.id
    with pytest.raises(Exception):
        a.type = "OTHER"
    assert a.summary() == {"id": a.id, "type": "RUN_LUA", "payload": a.payload}
