from __future__ import annotations

import importlib.util
from pathlib import Path

import pytest
import sqlalchemy as sa

_VERSIONS = Path(__file__).resolve().parents[1] / "leadflow" / "migrations" / "versions"


def _load(name):
    module_spec = importlib.util.spec_from_file_location(name, _VERSIONS / f"{name}.py")
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


fk_migration = _load("20261001_000002_leads_service_request_fk")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('{"serviceRequestId": 12}', 12),
        ({"serviceRequestId": " 7 "}, 7),
        ({"serviceRequestId": True}, None),
        ({"serviceRequestId": "abc"}, None),
        ("not json", None),
        ("[1, 2]", None),
        (None, None),
    ],
)
def test_metadata_request_id(raw, expected):
    assert fk_migration._metadata_request_id(raw) == expected


def test_backfill_links_leads_and_skips_conflicts():
    engine = sa.create_engine("sqlite://")
    with engine.begin() as conn:
        conn.execute(sa.text("CREATE TABLE service_requests (id INTEGER PRIMARY KEY)"))
        conn.execute(
            sa.text(
                "CREATE TABLE leads (id INTEGER PRIMARY KEY, provider_id INTEGER, status TEXT, "
                "metadata TEXT, service_request_id INTEGER)"
            )
        )
        conn.execute(sa.text("INSERT INTO service_requests (id) VALUES (1), (2)"))
        rows = [
            (1, 10, "accepted", '{"serviceRequestId": 1}'),
            (2, 11, "accepted", '{"serviceRequestId": 1}'),
            (3, 10, "submitted", '{"serviceRequestId": 1}'),
            (4, 12, "submitted", '{"serviceRequestId": 99}'),
            (5, 12, "routed", '{"serviceRequestId": "2"}'),
            (6, 13, "submitted", "{}"),
        ]
        for lead_id, provider_id, status, metadata in rows:
            conn.execute(
                sa.text("INSERT INTO leads (id, provider_id, status, metadata) VALUES (:id, :p, :s, :m)"),
                {"id": lead_id, "p": provider_id, "s": status, "m": metadata},
            )

        fk_migration._backfill_service_request_ids(conn)

        linked = dict(conn.execute(sa.text("SELECT id, service_request_id FROM leads ORDER BY id")).fetchall())

    # 2 would be a second accepted lead, 3 repeats provider 10, 4 points nowhere.
    assert linked == {1: 1, 2: None, 3: None, 4: None, 5: 2, 6: None}
