"""
Tests for the maintenance CLI.

Coverage:
- Option validation
- Command output for regenerate-slots and expand-windows
"""

from unittest.mock import MagicMock

from click.testing import CliRunner

from medbook import cli as cli_module


def test_organization_requires_location():
    result = CliRunner().invoke(
        cli_module.cli,
        ["regenerate-slots", "--organization-id", "6f1c2a3e-8d4b-4f3a-9c1e-2b7d5e6f8a90"],
    )

    assert result.exit_code == 2
    assert "--organization-id requires --location-id" in result.output


def test_regenerate_all_owners(monkeypatch):
    session = MagicMock()
    monkeypatch.setattr(cli_module, "SessionLocal", lambda: session)
    monkeypatch.setattr(
        cli_module.slot_blocking_service,
        "regenerate_slots_for_all_owners",
        lambda db: {
            "owners_processed": 2,
            "owners_failed": 0,
            "events_processed": 3,
            "slots_blocked": 4,
            "slots_released": 1,
            "conflicts": 0,
        },
    )

    result = CliRunner().invoke(cli_module.cli, ["regenerate-slots"])

    assert result.exit_code == 0
    assert "Regenerated 2 owners (0 failed), 4 slots blocked" in result.output
    session.close.assert_called_once()


def test_expand_windows_failure_exits_nonzero(monkeypatch):
    session = MagicMock()
    monkeypatch.setattr(cli_module, "SessionLocal", lambda: session)

    def boom(db):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(cli_module.availability_service, "expand_all_windows", boom)

    result = CliRunner().invoke(cli_module.cli, ["expand-windows"])

    assert result.exit_code == 1
    assert "database unavailable" in result.output
    session.rollback.assert_called_once()
