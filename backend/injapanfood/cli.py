import argparse
import asyncio
import json
import re
from pathlib import Path
from typing import Any, Dict

from pydantic import ValidationError

from injapanfood.db.session import SessionLocal
from injapanfood.models.coupon import Coupon, CouponUsage
from injapanfood.schemas.coupon import CouponCreate
from injapanfood.services import coupon_admin, coupon_repository
from injapanfood.services.coupon_errors import CouponError

SAFE_JSON_FILENAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*\.json$")


def _normalize_json_filename(raw_path: str) -> str:
    raw = (raw_path or "").strip()
    if not raw:
        raise SystemExit("Path is required")
    if Path(raw).name != raw:
        raise SystemExit("Only JSON file names are allowed (no directories)")
    if not SAFE_JSON_FILENAME_RE.fullmatch(raw):
        raise SystemExit("Invalid JSON file name")
    return raw


def _resolve_json_path(raw_path: str, *, must_exist: bool) -> Path:
    resolved = (Path.cwd().resolve() / _normalize_json_filename(raw_path)).resolve(strict=False)
    if must_exist and not resolved.is_file():
        raise SystemExit(f"Input file not found: {resolved}")
    if not must_exist and resolved.is_dir():
        raise SystemExit(f"Output path points to a directory: {resolved}")
    return resolved


def _decimal_text(value: Any) -> str | None:
    return None if value is None else str(value)


def _serialize_coupon(coupon: Coupon) -> Dict[str, Any]:
    return {
        "id": str(coupon.id),
        "code": coupon.code,
        "name": coupon.name,
        "description": coupon.description,
        "type": coupon.type.value,
        "value": _decimal_text(coupon.value),
        "min_order_amount": _decimal_text(coupon.min_order_amount),
        "max_discount_amount": _decimal_text(coupon.max_discount_amount),
        "usage_limit": coupon.usage_limit,
        "used_count": coupon.used_count,
        "user_usage_limit": coupon.user_usage_limit,
        "valid_from": coupon.valid_from.isoformat(),
        "valid_until": coupon.valid_until.isoformat(),
        "is_active": coupon.is_active,
        "applicable_products": list(coupon.applicable_products or []),
        "applicable_categories": list(coupon.applicable_categories or []),
        "created_by": coupon.created_by,
    }


def _serialize_usage(usage: CouponUsage) -> Dict[str, Any]:
    return {
        "id": str(usage.id),
        "coupon_id": str(usage.coupon_id),
        "user_id": usage.user_id,
        "order_id": usage.order_id,
        "discount_amount": _decimal_text(usage.discount_amount),
        "used_at": usage.used_at.isoformat(),
    }


async def export_coupons(output: Path) -> Dict[str, int]:
    data: Dict[str, Any] = {"coupons": [], "usages": []}
    async with SessionLocal() as session:
        coupons = await coupon_repository.list_coupons(session)
        for coupon in coupons:
            data["coupons"].append(_serialize_coupon(coupon))
            history = await coupon_repository.list_usage_history(session, coupon_id=coupon.id)
            data["usages"].extend(_serialize_usage(usage) for usage in history)

    output.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    print(f"Exported {len(data['coupons'])} coupons to {output}")
    return {"coupons": len(data["coupons"]), "usages": len(data["usages"])}


_IMPORT_FIELDS = set(CouponCreate.model_fields)


def _load_import_payload(input_path: Path) -> list[Dict[str, Any]]:
    payload = json.loads(input_path.read_text(encoding="utf-8"))
    coupons = payload.get("coupons") if isinstance(payload, dict) else payload
    if not isinstance(coupons, list):
        raise SystemExit("Expected a list of coupons or an object with a 'coupons' list")
    return coupons


async def import_coupons(input_path: Path, *, created_by: str | None = None) -> Dict[str, int]:
    """Create coupons from an export file. Codes that already exist are left untouched."""
    summary = {"created": 0, "skipped": 0, "failed": 0}
    async with SessionLocal() as session:
        for raw in _load_import_payload(input_path):
            fields = {k: v for k, v in dict(raw).items() if k in _IMPORT_FIELDS}
            try:
                payload = CouponCreate.model_validate(fields)
            except ValidationError as exc:
                print(f"Skipping invalid coupon {raw.get('code')!r}: {exc.errors()[0].get('msg')}")
                summary["failed"] += 1
                continue
            if await coupon_repository.get_coupon_by_code(session, code=payload.code) is not None:
                summary["skipped"] += 1
                continue
            try:
                await coupon_admin.create_coupon(session, payload, created_by=created_by or raw.get("created_by"))
            except CouponError as exc:
                print(f"Skipping coupon {payload.code!r}: {exc.detail}")
                summary["failed"] += 1
                continue
            summary["created"] += 1

    print(f"Imported coupons from {input_path}: {summary['created']} created, {summary['skipped']} skipped, {summary['failed']} failed")
    return summary


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Coupon data portability utilities")
    subparsers = parser.add_subparsers(dest="command")

    export_cmd = subparsers.add_parser("export-coupons", help="Export coupons and usage history to JSON")
    export_cmd.add_argument("--output", required=True, help="Output JSON file name")

    import_cmd = subparsers.add_parser("import-coupons", help="Import coupons from JSON")
    import_cmd.add_argument("--input", required=True, help="Input JSON file name")
    import_cmd.add_argument("--created-by", default=None, help="Override the creator recorded on imported coupons")
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "export-coupons":
        output_path = _resolve_json_path(args.output, must_exist=False)
        asyncio.run(export_coupons(output_path))
        return True

    if args.command == "import-coupons":
        input_path = _resolve_json_path(args.input, must_exist=True)
        asyncio.run(import_coupons(input_path, created_by=args.created_by))
        return True

    return False


def main():
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
