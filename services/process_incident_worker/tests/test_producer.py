import json

import pytest

from libs.decoder import decode_strict
from libs.models import CreateOrReplace, DeleteByProcessDefinition, DeleteByProcessInstance
from scripts.producer import build_delete, build_put, parse_args


def test_put_envelope_decodes_to_create_or_replace():
    args = parse_args(["put", "--id", "a", "--instance", "p1", "--definition", "d1", "--tenant", "t1", "--error", "boom"])
    envelope = build_put(args)

    command = decode_strict(json.dumps(envelope))

    assert isinstance(command, CreateOrReplace)
    assert command.record.id == "a"
    assert command.record.tenant_id == "t1"
    assert command.record.error_message == "boom"
    assert command.record.worker_id == "producer"
    assert command.record.schema_version == 3
    assert command.record.occurred_at is not None


def test_put_without_id_gets_generated_id():
    envelope = build_put(parse_args(["put", "--instance", "p1"]))
    assert envelope["incident"]["id"]


def test_delete_envelopes():
    by_definition = decode_strict(json.dumps(build_delete(parse_args(["delete", "--definition", "d1"]))))
    by_instance = decode_strict(json.dumps(build_delete(parse_args(["delete", "--instance", "p1"]))))
    assert by_definition == DeleteByProcessDefinition("d1")
    assert by_instance == DeleteByProcessInstance("p1")


@pytest.mark.parametrize("argv", [["put"], ["delete"], ["stop", "--instance", "p1"]])
def test_invalid_arguments_exit(argv):
    with pytest.raises(SystemExit):
        parse_args(argv)
