from __future__ import annotations

import hashlib
import subprocess
import sys
from pathlib import Path


SCRIPT_PATH = Path(__file__).resolve().parents[1] / "scripts" / "bootstrap_access.py"


def _run_script(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=False,
        capture_output=True,
        text=True,
    )


def test_role_command_emits_sql_for_user_id_target() -> None:
    user_id = "00000000-0000-0000-0000-000000000123"
    output = _run_script("role", "--user-id", user_id, "--role", "vetting_agent", "--actor", "cli").stdout

    assert "update auth.users" in output
    assert f"where id = '{user_id}'::uuid;" in output
    assert "jsonb_build_object('role', 'vetting_agent')" in output
    assert "values ('cli', 'human', 'human_role_bootstrap', 'bootstrap'" in output


def test_role_command_emits_sql_for_email_target() -> None:
    output = _run_script("role", "--email", "admin@example.com").stdout

    assert "where email = 'admin@example.com';" in output
    assert "jsonb_build_object('email', 'admin@example.com', 'role', 'admin')" in output


def test_role_command_rejects_unknown_role() -> None:
    completed = _run_script("role", "--email", "admin@example.com", "--role", "moderator")

    assert completed.returncode != 0
    assert "invalid choice" in completed.stderr


def test_module_command_emits_only_key_hash() -> None:
    completed = _run_script("module", "--api-key", "plain-secret", "--scope", "ml:write", "--actor", "ops")
    output = completed.stdout

    assert completed.returncode == 0
    assert "plain-secret" not in output
    assert hashlib.sha256(b"plain-secret").hexdigest() in output
    assert "values ('ml-analyzer', 'ML document analyzer', array['ml:write']::text[])" in output
    assert "values ('ops', 'human', 'module_credential_bootstrap', 'bootstrap', 'ml-analyzer'" in output


def test_module_command_escapes_quotes() -> None:
    output = _run_script("module", "--api-key", "k", "--name", "O'Neil analyzer").stdout

    assert "'O''Neil analyzer'" in output
