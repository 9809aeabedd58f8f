#!/usr/bin/env python3
"""Validate local fleet scheduler environment readiness."""

from __future__ import annotations

import asyncio
import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import datetime
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.domain.models import ViewMode
from backend.repository.data_repository import DataRepository
from backend.services.gateway import RepositoryScheduleGateway
from backend.services.scheduler_service import SchedulerSession
from backend.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="fleet-env-")

    # CHECK 1: Python version >= 3.10
    if sys.version_info >= (3, 10):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.10",
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
        ("requests", "requests"),
        ("streamlit", "streamlit"),
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
            database_path=Path(temp_dir) / "fleet_validation.db",
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

        # CHECK 4: Demo fleet seeding
        reference = datetime.now().replace(hour=12, minute=0, second=0, microsecond=0)
        try:
            repository.seed_demo_fleet(reference)
            cars = repository.count_cars()
            bookings = repository.count_bookings()
            if cars == 0 or bookings == 0:
                raise RuntimeError(f"expected a seeded fleet, got cars={cars} bookings={bookings}")
            ok, line = _print_result("Demo fleet", True, f": {cars} cars, {bookings} bookings")
        except Exception as exc:
            ok, line = _print_result("Demo fleet", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: Schedule fetch and layout of the current week
        try:
            session = SchedulerSession(
                gateway=RepositoryScheduleGateway(repository),
                settings=validation_settings,
                clock=lambda: reference,
                view=ViewMode.WEEK,
            )
            if not asyncio.run(session.refresh()):
                raise RuntimeError("schedule fetch was dropped or failed")
            view = session.render()
            placed = sum(len(row.placements) for row in view.rows)
            if not view.rows or placed == 0:
                raise RuntimeError("week view rendered no bookings")
            ok, line = _print_result(
                "Timeline layout",
                True,
                f": {len(view.rows)} rows, {placed} placements",
            )
        except Exception as exc:
            ok, line = _print_result("Timeline layout", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Fleet Scheduler Environment Validation")
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
