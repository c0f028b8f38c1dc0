import argparse
import asyncio
import json
from decimal import Decimal
from pathlib import Path

import pytest

from conftest import add_coupon
from injapanfood import cli
from injapanfood.db.session import build_engine, build_session_factory
from injapanfood.models import Base
from injapanfood.services.coupon_redemption import redeem_coupon


@pytest.fixture
def cli_sessions(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    SessionLocal = build_session_factory(engine)
    monkeypatch.setattr(cli, "SessionLocal", SessionLocal)
    monkeypatch.chdir(tmp_path)
    return SessionLocal


def test_resolve_json_path_validation_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    with pytest.raises(SystemExit, match="Path is required"):
        cli._resolve_json_path("", must_exist=True)
    with pytest.raises(SystemExit, match="Only JSON file names are allowed"):
        cli._resolve_json_path("nested/coupons.json", must_exist=True)
    with pytest.raises(SystemExit, match="Invalid JSON file name"):
        cli._resolve_json_path("coupons.txt", must_exist=True)
    with pytest.raises(SystemExit, match="Input file not found"):
        cli._resolve_json_path("missing.json", must_exist=True)

    (tmp_path / "out.json").mkdir()
    with pytest.raises(SystemExit, match="Output path points to a directory"):
        cli._resolve_json_path("out.json", must_exist=False)


def test_export_then_import_into_empty_store(cli_sessions, tmp_path: Path) -> None:
    SessionLocal = cli_sessions
    coupon = asyncio.run(add_coupon(SessionLocal, code="EXPORTME", applicable_products=["p-1"]))

    async def _use() -> None:
        async with SessionLocal() as session:
            await redeem_coupon(session, coupon_id=coupon.id, user_id="u-1", order_id="o-1", discount_amount=Decimal("10"))

    asyncio.run(_use())

    counts = asyncio.run(cli.export_coupons(tmp_path / "coupons.json"))
    exported = json.loads((tmp_path / "coupons.json").read_text(encoding="utf-8"))

    assert counts == {"coupons": 1, "usages": 1}
    assert exported["coupons"][0]["code"] == "EXPORTME"
    assert exported["coupons"][0]["applicable_products"] == ["p-1"]
    assert exported["usages"][0]["order_id"] == "o-1"

    summary = asyncio.run(cli.import_coupons(tmp_path / "coupons.json"))
    assert summary == {"created": 0, "skipped": 1, "failed": 0}


def test_import_creates_new_coupons_and_reports_invalid_rows(cli_sessions, tmp_path: Path) -> None:
    payload = [
        {
            "code": "fresh",
            "name": "Fresh",
            "type": "fixed_amount",
            "value": "500",
            "valid_from": "2026-01-01T00:00:00+00:00",
            "valid_until": "2026-12-31T00:00:00+00:00",
            "used_count": 42,
        },
        {"code": "broken", "name": "Broken", "value": "250", "valid_from": "2026-01-01T00:00:00+00:00", "valid_until": "2026-12-31T00:00:00+00:00"},
    ]
    (tmp_path / "seed.json").write_text(json.dumps(payload), encoding="utf-8")

    summary = asyncio.run(cli.import_coupons(tmp_path / "seed.json", created_by="seed"))

    assert summary == {"created": 1, "skipped": 0, "failed": 1}


def test_run_cli_command_dispatch(cli_sessions, tmp_path: Path) -> None:
    (tmp_path / "empty.json").write_text(json.dumps({"coupons": []}), encoding="utf-8")

    assert cli._run_cli_command(argparse.Namespace(command="export-coupons", output="dump.json")) is True
    assert (tmp_path / "dump.json").is_file()
    assert cli._run_cli_command(argparse.Namespace(command="import-coupons", input="empty.json", created_by=None)) is True
    assert cli._run_cli_command(argparse.Namespace(command="unknown")) is False
