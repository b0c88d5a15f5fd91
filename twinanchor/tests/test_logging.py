# twinanchor/tests/test_logging.py
import json
import logging

import pytest

from twinanchor import logging as tlog


@pytest.fixture(autouse=True)
def _fresh_context():
    tlog.reset()
    yield
    tlog.reset()


def _format(**attrs):
    rec = logging.LogRecord("twinanchor.test", logging.INFO, __file__, 1, "anchored %s", ("e1",), None)
    for k, v in attrs.items():
        setattr(rec, k, v)
    return json.loads(tlog.JSONFormatter().format(rec))


def test_envelope_fields():
    evt = _format(entity_type="expense", public_tx="0xabc", block_number=7, version=3)
    assert evt["msg"] == "anchored e1"
    assert evt["lvl"] == "INFO"
    assert evt["logger"] == "twinanchor.test"
    assert (evt["entity_type"], evt["public_tx"], evt["block_number"]) == ("expense", "0xabc", 7)
    assert evt["anchor_version"] == 3
    assert "meta" not in evt


def test_bound_context_is_used_and_explicit_wins():
    tlog.bind_anchor_context(org_id="org1", entity_id="e1", action="update")
    evt = _format(entity_id="e2")
    assert evt["org_id"] == "org1"
    assert evt["action"] == "update"
    assert evt["entity_id"] == "e2"
    tlog.unbind("org_id")
    assert "org_id" not in tlog.context()


def test_record_contents_and_secrets_never_logged():
    evt = _format(
        record={"amount": 1},
        after_data={"x": 1},
        rpc_password="hunter2",
        wallet_private_key_enc="v1:abc",
        detail="kept",
    )
    meta = evt["meta"]
    assert "record" not in meta and "after_data" not in meta
    assert meta["rpc_password"] == "***"
    assert meta["wallet_private_key_enc"] == "***"
    assert meta["detail"] == "kept"


def test_anchor_and_security_events(caplog):
    logger = logging.getLogger("twinanchor.test.events")
    with caplog.at_level(logging.INFO, logger="twinanchor.test.events"):
        tlog.log_anchor_event(
            logger,
            outcome="anchored",
            entity_type="expense",
            entity_id="e1",
            extra={"metadata": "{...}", "private_key": "0x11"},
        )
        tlog.log_security_event(logger, threat_label="bad_service_token", org_id="org1")
    anchor, security = caplog.records
    assert anchor.outcome == "anchored"
    assert not hasattr(anchor, "metadata")
    assert anchor.private_key == "***"
    assert security.levelno == logging.WARNING
    assert security.threat_label == "bad_service_token"


def test_scrub_dict_redacts_headers():
    out = tlog.scrub_dict({"Authorization": "Bearer x", "x-org-id": "org1", "nested": {"cookie": "c"}})
    assert out == {"Authorization": "***", "x-org-id": "org1", "nested": {"cookie": "***"}}


def test_request_id_taken_from_header_or_generated():
    assert tlog.ensure_request_id({"x-request-id": "abc"}) == "abc"
    assert tlog.context()["req_id"] == "abc"
    generated = tlog.ensure_request_id({})
    assert len(generated) == 16
