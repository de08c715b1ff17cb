import pytest

from libs.decoder import DECODERS, decode, decode_strict, sniff_version
from libs.errors import MalformedMessage, UnknownSchemaVersion
from libs.models import CreateOrReplace, DeleteByProcessDefinition, DeleteByProcessInstance

from conftest import encode, legacy_incident


def test_sniff_version_reads_only_the_version():
    # The rest of the payload is not validated in the first stage
    assert sniff_version(b'{"msg_version": 3, "incident": "garbage"}') == 3


@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b"[1, 2, 3]",
        b'"msg_version"',
        b"{}",
        b'{"msg_version": "2"}',
        b'{"msg_version": 2.0}',
        b'{"msg_version": true}',
        b'{"msg_version": null}',
        b"\xff\xfe",
    ],
)
def test_sniff_version_rejects_malformed(payload):
    with pytest.raises(MalformedMessage):
        sniff_version(payload)


def test_registry_covers_known_versions():
    assert sorted(DECODERS) == [1, 2, 3]


@pytest.mark.parametrize("version", [1, 2])
def test_legacy_versions_decode_flat_record(version):
    command = decode(encode(legacy_incident(msg_version=version)))
    assert isinstance(command, CreateOrReplace)
    record = command.record
    assert record.id == "a"
    assert record.process_instance_id == "p1"
    assert record.process_definition_id == "d1"
    assert record.tenant_id == "t1"
    assert record.occurred_at is not None and record.occurred_at.year == 2024
    assert record.schema_version == version


def test_legacy_record_accepts_str_payload_and_unknown_fields():
    payload = legacy_incident(extra_field="ignored")
    command = decode(encode(payload).decode("utf-8"))
    assert isinstance(command, CreateOrReplace)


def test_legacy_record_null_identifiers_become_empty():
    command = decode(encode(legacy_incident(tenant_id=None, worker_id=None)))
    assert isinstance(command, CreateOrReplace)
    assert command.record.tenant_id == ""
    assert command.record.worker_id == ""


@pytest.mark.parametrize("missing", ["id", "process_instance_id"])
def test_legacy_record_missing_required_field_is_malformed(missing):
    payload = legacy_incident()
    del payload[missing]
    with pytest.raises(MalformedMessage):
        decode_strict(encode(payload))
    assert decode(encode(payload)) is None


@pytest.mark.parametrize("version", [0, 4, -1, 99])
def test_unknown_version(version):
    payload = encode({"msg_version": version, "command": "DELETE", "process_instance_id": "p1"})
    with pytest.raises(UnknownSchemaVersion) as exc_info:
        decode_strict(payload)
    assert exc_info.value.version == version
    assert decode(payload) is None


@pytest.mark.parametrize("verb", ["PUT", "POST"])
def test_envelope_put_post_creates(verb):
    incident = legacy_incident()
    del incident["msg_version"]
    command = decode(encode({"msg_version": 3, "command": verb, "incident": incident}))
    assert isinstance(command, CreateOrReplace)
    assert command.record.id == "a"
    assert command.record.schema_version == 3


def test_envelope_version_overrides_embedded_record_version():
    incident = legacy_incident(msg_version=1)
    command = decode(encode({"msg_version": 3, "command": "PUT", "incident": incident}))
    assert command.record.schema_version == 3


def test_envelope_put_without_incident_is_ignored():
    assert decode_strict(encode({"msg_version": 3, "command": "PUT"})) is None
    assert decode_strict(encode({"msg_version": 3, "command": "POST", "incident": None})) is None


def test_envelope_delete_by_definition_takes_precedence():
    command = decode(
        encode(
            {
                "msg_version": 3,
                "command": "DELETE",
                "process_definition_id": "d1",
                "process_instance_id": "p1",
            }
        )
    )
    assert command == DeleteByProcessDefinition("d1")


def test_envelope_delete_by_instance():
    command = decode(
        encode({"msg_version": 3, "command": "DELETE", "process_definition_id": "", "process_instance_id": "p1"})
    )
    assert command == DeleteByProcessInstance("p1")


def test_envelope_delete_without_ids_is_ignored():
    assert decode_strict(encode({"msg_version": 3, "command": "DELETE"})) is None
    assert decode_strict(
        encode({"msg_version": 3, "command": "DELETE", "process_definition_id": None, "process_instance_id": ""})
    ) is None


@pytest.mark.parametrize("verb", ["PATCH", "delete", "", "GET"])
def test_envelope_other_commands_are_ignored(verb):
    payload = {"msg_version": 3, "command": verb, "incident": legacy_incident(), "process_instance_id": "p1"}
    assert decode_strict(encode(payload)) is None


def test_envelope_with_invalid_incident_is_malformed():
    payload = {"msg_version": 3, "command": "PUT", "incident": {"id": "a"}}
    with pytest.raises(MalformedMessage):
        decode_strict(encode(payload))
    assert decode(encode(payload)) is None


def test_envelope_delete_ignores_embedded_record():
    payload = {"msg_version": 3, "command": "DELETE", "incident": legacy_incident(), "process_instance_id": "p9"}
    assert decode(encode(payload)) == DeleteByProcessInstance("p9")


@pytest.mark.parametrize(
    "incident",
    [{"id": "x"}, {"id": "", "process_instance_id": "p1"}, {"process_definition_id": "d1"}],
)
def test_envelope_delete_with_partial_record_still_deletes(incident):
    payload = {"msg_version": 3, "command": "DELETE", "process_instance_id": "p1", "incident": incident}
    assert decode_strict(encode(payload)) == DeleteByProcessInstance("p1")


def test_envelope_with_non_object_incident_is_malformed():
    payload = {"msg_version": 3, "command": "DELETE", "process_instance_id": "p1", "incident": "a"}
    with pytest.raises(MalformedMessage):
        decode_strict(encode(payload))


def test_deeply_nested_payload_is_malformed():
    payload = b'{"msg_version": 2, "x": ' + b"[" * 200_000 + b"]" * 200_000 + b"}"
    with pytest.raises(MalformedMessage):
        sniff_version(payload)
    assert decode(payload) is None
