"""Tests for the airc command-line interface."""

from __future__ import annotations

import json
import stat
from unittest.mock import patch

import pytest

from airc.cli import build_parser, load_private_key, main
from airc.identity.keys import PublicKey
from airc.identity.signatures import SignatureVerifier


@pytest.fixture
def key_file(tmp_path, capsys):
    path = tmp_path / "recovery.key"
    assert main(["keygen", "--name", "recovery", "--out", str(path)]) == 0
    public_key = json.loads(capsys.readouterr().out)["public_key"]
    return path, public_key


class TestKeygen:
    def test_writes_private_key_with_0600(self, key_file):
        path, public_key = key_file
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert str(load_private_key(path).public_key) == public_key

    def test_private_key_not_printed(self, tmp_path, capsys):
        path = tmp_path / "signing.key"
        main(["keygen", "--out", str(path)])
        out = capsys.readouterr().out
        assert path.read_text().strip() not in out
        assert PublicKey.parse(json.loads(out)["public_key"])

    def test_default_location(self, tmp_path, capsys, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        assert main(["keygen"]) == 0
        key_path = json.loads(capsys.readouterr().out)["private_key_file"]
        assert key_path.startswith(str(tmp_path / ".airc" / "keys"))
        assert stat.S_IMODE((tmp_path / ".airc" / "keys").stat().st_mode) == 0o700


class TestProofCommands:
    def test_sign_message(self, key_file, capsys):
        path, public_key = key_file
        assert main(["sign-message", "-k", str(path), "--from", "alice", "--to", "bob", "--text", "hi"]) == 0
        envelope = json.loads(capsys.readouterr().out)
        assert envelope["from"] == "alice"
        assert SignatureVerifier().verify_envelope(envelope, public_key)

    def test_rotation_proof(self, key_file, capsys):
        path, public_key = key_file
        argv = [
            "rotation-proof",
            "--handle", "alice",
            "--old-key", public_key,
            "--new-key", public_key,
            "-r", str(path),
        ]
        assert main(argv) == 0
        proof = json.loads(capsys.readouterr().out)["proof"]
        assert proof["operation"] == "rotate"
        assert SignatureVerifier().verify_envelope(proof, public_key)

    def test_revocation_proof(self, key_file, capsys):
        path, public_key = key_file
        assert main(["revocation-proof", "--handle", "alice", "--reason", "lost", "-r", str(path)]) == 0
        proof = json.loads(capsys.readouterr().out)["proof"]
        assert proof["reason"] == "lost"
        assert SignatureVerifier().verify_envelope(proof, public_key)

    def test_missing_key_file(self, tmp_path, capsys):
        assert main(["revocation-proof", "--handle", "alice", "-r", str(tmp_path / "missing.key")]) == 1
        assert "Error:" in capsys.readouterr().err

    def test_corrupt_key_file(self, tmp_path, capsys):
        path = tmp_path / "bad.key"
        path.write_text("not hex")
        assert main(["revocation-proof", "--handle", "alice", "-r", str(path)]) == 1


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_unknown_algorithm(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--algorithm", "rsa", "keygen"])

    def test_serve_runs_server(self):
        with patch("airc.server.app.run") as run:
            assert main(["serve"]) == 0
        run.assert_called_once()
