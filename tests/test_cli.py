"""End-to-end tests for the vault-transfer command line."""

import json
import logging

from conftest import PNG_DATA
from vault_transfer import SettingsStore, main, setup_logging


def run(config_path, *argv):
    return main(["--config", str(config_path), *argv])


def test_vaults_add_list_remove(tmp_path, config_path, capsys):
    vault_a = tmp_path / "a"
    vault_b = tmp_path / "b"
    vault_a.mkdir()

    assert run(config_path, "vaults", "add", str(vault_a)) == 0
    assert run(config_path, "vaults", "add", str(vault_b)) == 0
    assert run(config_path, "vaults", "add", str(vault_a)) == 1
    assert "already registered" in capsys.readouterr().out

    stored = json.loads(config_path.read_text())
    assert stored["target_vault_paths"] == [str(vault_a), str(vault_b)]

    assert run(config_path, "vaults", "list") == 0
    out = capsys.readouterr().out
    assert out.index(str(vault_a)) < out.index(str(vault_b))

    assert run(config_path, "vaults", "remove", str(vault_a)) == 0
    assert SettingsStore(config_path).load().target_vault_paths.to_list() == [str(vault_b)]

    assert run(config_path, "vaults", "remove", str(vault_a)) == 2


def test_config_set_persists(config_path, capsys):
    assert run(config_path, "config", "set", "handle-conflicts", "skip") == 0
    assert run(config_path, "config", "set", "preserve_metadata", "false") == 0
    settings = SettingsStore(config_path).load()
    assert settings.handle_conflicts.value == "skip"
    assert settings.preserve_metadata is False

    assert run(config_path, "config", "set", "handle-conflicts", "merge") == 2

    assert run(config_path, "config", "show") == 0
    assert '"handle_conflicts": "skip"' in capsys.readouterr().out


def test_transfer_without_vaults(populated_vaults, config_path):
    source, _ = populated_vaults
    assert run(config_path, "transfer", "--source-vault", str(source), "notes/a.md") == 2


def test_transfer_copy(populated_vaults, config_path, capsys):
    source, destination = populated_vaults
    run(config_path, "vaults", "add", str(destination))
    capsys.readouterr()

    code = run(config_path, "transfer", "--source-vault", str(source), "--no-progress", "notes/a.md")

    assert code == 0
    assert (destination / "notes" / "a.md").read_text(encoding="utf-8") == (
        source / "notes" / "a.md"
    ).read_text(encoding="utf-8")
    assert (destination / "assets" / "pic.png").read_bytes() == PNG_DATA
    assert (source / "notes" / "a.md").exists()
    assert "Transferred notes/a.md" in capsys.readouterr().out


def test_transfer_move_with_conflict(populated_vaults, config_path, capsys):
    source, destination = populated_vaults
    (destination / "notes").mkdir()
    (destination / "notes" / "a.md").write_text("existing")
    run(config_path, "vaults", "add", str(destination))

    code = run(
        config_path, "transfer", "--source-vault", str(source), "--move",
        str(source / "notes" / "a.md"),
    )

    assert code == 0
    assert (destination / "notes" / "a (1).md").exists()
    assert (destination / "notes" / "a.md").read_text() == "existing"
    assert (destination / "assets" / "pic.png").exists()
    assert not (source / "notes" / "a.md").exists()
    assert not (source / "assets" / "pic.png").exists()
    assert "Moved notes/a.md" in capsys.readouterr().out


def test_transfer_several_vaults_needs_to(populated_vaults, tmp_path, config_path):
    source, destination = populated_vaults
    other = tmp_path / "other"
    run(config_path, "vaults", "add", str(destination))
    run(config_path, "vaults", "add", str(other))

    # stdin is not a terminal under pytest, so no prompt is shown.
    assert run(config_path, "transfer", "--source-vault", str(source), "notes/a.md") == 2
    assert not (destination / "notes").exists()

    code = run(config_path, "transfer", "--source-vault", str(source), "--to", str(other), "notes/a.md")
    assert code == 0
    assert (other / "notes" / "a.md").exists()


def test_transfer_report_and_failure(populated_vaults, tmp_path, config_path):
    source, destination = populated_vaults
    report_path = tmp_path / "report.json"
    run(config_path, "vaults", "add", str(destination))

    code = run(
        config_path, "transfer", "--source-vault", str(source), "--no-progress",
        "--report", str(report_path), "notes/a.md", "notes/missing.md",
    )

    assert code == 1
    report = json.loads(report_path.read_text())
    assert report["summary"]["files_processed"] == 2
    assert report["summary"]["transferred"] == 1
    assert report["summary"]["failed"] == 1
    assert report["summary"]["attachments_copied"] == 1
    assert report["files"][1]["status"] == "failed"


def test_transfer_markdown_report_with_skip(populated_vaults, tmp_path, config_path):
    source, destination = populated_vaults
    (destination / "notes").mkdir()
    (destination / "notes" / "a.md").write_text("existing")
    report_path = tmp_path / "report.md"
    run(config_path, "vaults", "add", str(destination))

    code = run(
        config_path, "transfer", "--source-vault", str(source), "--on-conflict", "skip",
        "--report", str(report_path), "--report-format", "md", "notes/a.md",
    )

    assert code == 0
    content = report_path.read_text()
    assert "# Vault Transfer Report" in content
    assert "Skipped: 1" in content
    assert (destination / "notes" / "a.md").read_text() == "existing"


def test_transfer_file_outside_vault(populated_vaults, tmp_path, config_path, capsys):
    source, destination = populated_vaults
    stray = tmp_path / "stray.md"
    stray.write_text("x")
    report_path = tmp_path / "report.json"
    run(config_path, "vaults", "add", str(destination))

    code = run(
        config_path, "transfer", "--source-vault", str(source), "--no-progress",
        "--report", str(report_path), str(stray), "notes/a.md",
    )

    assert code == 1
    assert (destination / "notes" / "a.md").exists()
    assert not (destination / "stray.md").exists()
    report = json.loads(report_path.read_text())
    assert report["summary"]["transferred"] == 1
    assert report["files"][0]["status"] == "failed"
    assert "not inside the source vault" in capsys.readouterr().out


def test_transfer_to_source_vault_refused(populated_vaults, config_path):
    source, _ = populated_vaults

    code = run(
        config_path, "transfer", "--source-vault", str(source), "--to", str(source),
        "--move", "--on-conflict", "overwrite", "notes/a.md",
    )

    assert code == 2
    assert (source / "notes" / "a.md").exists()
    assert (source / "assets" / "pic.png").read_bytes() == PNG_DATA


def test_log_file_records_debug(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    log_file = tmp_path / "run.log"
    try:
        setup_logging(verbose=0, log_file=log_file)
        logging.getLogger("vault_transfer").debug("path decision")
        console = [h for h in root.handlers if not isinstance(h, logging.FileHandler)]
        assert all(h.level == logging.WARNING for h in console)
    finally:
        for handler in root.handlers:
            if handler not in saved_handlers:
                handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)

    assert "DEBUG - path decision" in log_file.read_text()
