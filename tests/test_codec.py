import json
from datetime import date, datetime, timezone
from enum import Enum

import pytest

from tubework.codec import FORMAT_VERSION, SELF_TYPE, Envelope, TaskCodec
from tubework.errors import NotSerializableError
from tubework.registry import EntityRef, Submittable


class Color(Enum):
    RED = "red"
    BLUE = "blue"


class User(Submittable):
    def __init__(self, pk):
        self.pk = pk

    def task_ref(self):
        return EntityRef("User", self.pk)


def wire(codec, value):
    # what actually crosses the queue is JSON text
    return codec.decode(json.loads(json.dumps(codec.encode(value))))


def test_values_survive_the_wire_exactly():
    codec = TaskCodec()
    codec.register_enum(Color)
    value = [
        None,
        True,
        0,
        -7,
        2.5,
        "text",
        ("a", 1),
        {"k": [1, 2], 3: "int key", ("t", 1): None},
        range(3, 40, 4),
        datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc),
        date(2024, 5, 1),
        Color.BLUE,
        EntityRef("Order", 17),
    ]
    decoded = wire(codec, value)
    assert decoded == value
    assert type(decoded[6]) is tuple
    assert type(decoded[8]) is range


def test_submittable_is_encoded_as_its_reference():
    codec = TaskCodec()
    assert wire(codec, User(5)) == EntityRef("User", 5)


@pytest.mark.parametrize("value", [{1, 2}, b"raw", object(), [1, frozenset()], {"k": lambda: 1}])
def test_unsupported_values_are_rejected(value):
    with pytest.raises(NotSerializableError):
        TaskCodec().encode(value)


def test_unregistered_enum_is_rejected_on_both_sides():
    producer = TaskCodec()
    with pytest.raises(NotSerializableError):
        producer.encode(Color.RED)

    producer.register_enum(Color)
    encoded = producer.encode(Color.RED)
    with pytest.raises(NotSerializableError):
        TaskCodec().decode(encoded)


def test_unknown_tag_is_rejected():
    with pytest.raises(NotSerializableError):
        TaskCodec().decode({"$set": [1, 2]})


def test_descriptor_round_trip_and_version_check():
    codec = TaskCodec()
    descriptor = codec.describe(User(1), "notify", [range(2), "x"], {"channel": "mail"})
    loaded = codec.load_descriptor(json.loads(json.dumps(codec.dump_descriptor(descriptor))))
    assert loaded.target == EntityRef("User", 1)
    assert loaded.operation == "notify"
    assert loaded.args == [range(2), "x"]
    assert loaded.extras == {"channel": "mail"}
    assert loaded.version == FORMAT_VERSION

    data = codec.dump_descriptor(descriptor)
    data["v"] = FORMAT_VERSION + 1
    with pytest.raises(NotSerializableError):
        codec.load_descriptor(data)


def test_envelope_parse():
    envelope = Envelope(type=SELF_TYPE, code={"v": 1, "op": "x"}, appver="v2", tube="v2", delete_first=True)
    parsed = Envelope.parse(envelope.dumps())
    assert parsed == envelope

    assert Envelope.parse("not json") is None
    assert Envelope.parse(json.dumps({"type": "other", "code": {}})) is None
    assert Envelope.parse(json.dumps([1, 2])) is None
