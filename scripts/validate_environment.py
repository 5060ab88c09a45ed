#!/usr/bin/env python3
"""Validate local TurnKeeper environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import date, datetime, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from turnkeeper.domain.models import RotationConfig, RotationMode
from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.services.selection_service import SelectionService
from turnkeeper.services.settlement_service import PartyAllocation, build_plan
from turnkeeper.services.window_service import WindowService
from turnkeeper.utils.config import get_settings

SEPARATOR_LINE = "=" * 44
VALIDATION_ORG = "env-check"
VALIDATION_YEAR = 2030


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def _fixed_clock() -> datetime:
    return datetime(VALIDATION_YEAR, 1, 1, 9, 0, tzinfo=timezone.utc)


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="turnkeeper-env-")

    # CHECK 1: Python version >= 3.11
    if sys.version_info >= (3, 11):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.11",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("pandas", "pandas"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    from importlib.metadata import PackageNotFoundError, version

    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except (ImportError, PackageNotFoundError) as exc:
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        validation_settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "turnkeeper_validation.db",
        )
        repository = DataRepository(validation_settings)

        # CHECK 3: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Window layout for a three-group rotation
        try:
            repository.save_rotation_config(
                RotationConfig(
                    organization_id=VALIDATION_ORG,
                    rotation_year=VALIDATION_YEAR,
                    base_order=("A", "B", "C"),
                    mode=RotationMode.CONSTANT,
                )
            )
            windows = WindowService(
                repository=repository,
                settings=validation_settings,
                clock=_fixed_clock,
            ).windows(VALIDATION_ORG, VALIDATION_YEAR)
            if len(windows) != 6:
                raise RuntimeError(f"expected 6 windows, got {len(windows)}")
            ok, line = _print_result(
                "Window layout",
                True,
                f": first {windows[0].family_group} {windows[0].start_date.isoformat()}",
            )
        except Exception as exc:
            ok, line = _print_result("Window layout", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: Primary selection start
        try:
            transition = SelectionService(
                repository=repository,
                settings=validation_settings,
                clock=_fixed_clock,
            ).primary.start(VALIDATION_ORG, VALIDATION_YEAR)
            ok, line = _print_result(
                "Selection start",
                True,
                f": {len(transition.events)} event(s)",
            )
        except Exception as exc:
            ok, line = _print_result("Selection start", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 6: Settlement arithmetic
        try:
            plan = build_plan(
                total_amount=300.0,
                ground_truth={date(2030, 6, 1): 4, date(2030, 6, 2): 2},
                source_party="A",
                recipients=[
                    PartyAllocation("B", {date(2030, 6, 1): 2, date(2030, 6, 2): 1}),
                ],
            )
            if not plan.is_valid or abs(plan.recipients[0].amount - 150.0) > 0.01:
                raise RuntimeError("settlement plan did not reconcile")
            ok, line = _print_result(
                "Settlement arithmetic",
                True,
                f": per-diem={plan.per_diem_rate:.2f}",
            )
        except Exception as exc:
            ok, line = _print_result("Settlement arithmetic", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" TurnKeeper Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
