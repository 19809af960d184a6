# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Command-line interface for airc keys, signed envelopes and the server."""

from __future__ import annotations

import argparse
import json
import os
import secrets
import stat
import sys
from datetime import datetime
from pathlib import Path

from .core.exceptions import ValidationException
from .identity.keys import DEFAULT_ALGORITHM, KeyPair, generate_keypair, supported_algorithms
from .identity.proofs import create_message_envelope, create_revocation_proof, create_rotation_proof


def get_secure_key_dir() -> Path:
    """Get or create the secure key directory.

    Creates ~/.airc/keys/ with 0700 permissions.
    """
    key_dir = Path.home() / ".airc" / "keys"
    key_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(key_dir, stat.S_IRWXU)
    return key_dir


def save_private_key(keypair: KeyPair, name: str, path: Path | None = None) -> Path:
    """Write a private key (hex) to a file created with 0600 permissions.

    Args:
        keypair: Key pair whose private half is saved
        name: Label used in the generated filename
        path: Explicit destination (default: a new file in ~/.airc/keys/)

    Returns:
        Path to the saved key file
    """
    if path is None:
        safe_name = "".join(c if c.isalnum() or c in "-_" else "_" for c in name)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = get_secure_key_dir() / f"{safe_name}_{timestamp}_{secrets.token_hex(4)}.key"

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
    try:
        os.write(fd, keypair.private_key_hex.encode("ascii"))
        os.write(fd, b"\n")
    finally:
        os.close(fd)
    return path


def load_private_key(path: Path, algorithm: str = DEFAULT_ALGORITHM) -> KeyPair:
    """Load a key pair from a private key file written by ``save_private_key``."""
    return KeyPair.from_private_key_hex(path.read_text().strip(), algorithm=algorithm)


def _emit(data: dict) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def cmd_keygen(args: argparse.Namespace) -> int:
    """Generate a key pair."""
    keypair = generate_keypair(args.algorithm)
    key_file = save_private_key(keypair, args.name, args.out)

    _emit({"public_key": str(keypair.public_key), "private_key_file": str(key_file)})
    print(file=sys.stderr)
    print("Private key saved with 0600 permissions (not printed to console).", file=sys.stderr)
    if args.name == "recovery":
        print("Keep the recovery key offline: it is the only key that can rotate or revoke.", file=sys.stderr)
    return 0


def cmd_sign_message(args: argparse.Namespace) -> int:
    """Emit a signed message envelope."""
    keypair = load_private_key(args.key_file, args.algorithm)
    _emit(create_message_envelope(args.sender, args.to, args.text, keypair))
    return 0


def cmd_rotation_proof(args: argparse.Namespace) -> int:
    """Emit a rotation proof signed by the recovery key."""
    recovery = load_private_key(args.recovery_key_file, args.algorithm)
    proof = create_rotation_proof(args.handle, args.old_key, args.new_key, recovery)
    _emit({"proof": proof})
    return 0


def cmd_revocation_proof(args: argparse.Namespace) -> int:
    """Emit a revocation proof signed by the recovery key."""
    recovery = load_private_key(args.recovery_key_file, args.algorithm)
    proof = create_revocation_proof(args.handle, recovery, reason=args.reason)
    _emit({"proof": proof})
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP server."""
    from .server.app import run

    run()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="airc identity keys, signed envelopes and server",
        prog="airc",
    )
    parser.add_argument(
        "--algorithm",
        default=DEFAULT_ALGORITHM,
        choices=supported_algorithms(),
        help=f"Signature algorithm (default: {DEFAULT_ALGORITHM})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Keygen command
    keygen_parser = subparsers.add_parser("keygen", help="Generate a key pair")
    keygen_parser.add_argument(
        "--name",
        "-n",
        default="signing",
        help="Label for the key file, e.g. 'signing' or 'recovery'",
    )
    keygen_parser.add_argument(
        "--out",
        "-o",
        type=Path,
        default=None,
        help="Private key file (default: new file under ~/.airc/keys/)",
    )

    # Sign-message command
    message_parser = subparsers.add_parser("sign-message", help="Sign a message envelope")
    message_parser.add_argument("--key-file", "-k", type=Path, required=True, help="Signing private key file")
    message_parser.add_argument("--from", dest="sender", required=True, help="Sender handle")
    message_parser.add_argument("--to", required=True, help="Recipient handle")
    message_parser.add_argument("--text", required=True, help="Message text")

    # Rotation-proof command
    rotation_parser = subparsers.add_parser("rotation-proof", help="Create a signed key rotation proof")
    rotation_parser.add_argument("--handle", required=True, help="Identity handle")
    rotation_parser.add_argument("--old-key", required=True, help="Current signing public key")
    rotation_parser.add_argument("--new-key", required=True, help="New signing public key")
    rotation_parser.add_argument(
        "--recovery-key-file", "-r", type=Path, required=True, help="Recovery private key file"
    )

    # Revocation-proof command
    revocation_parser = subparsers.add_parser("revocation-proof", help="Create a signed revocation proof")
    revocation_parser.add_argument("--handle", required=True, help="Identity handle")
    revocation_parser.add_argument("--reason", default=None, help="Reason recorded with the revocation")
    revocation_parser.add_argument(
        "--recovery-key-file", "-r", type=Path, required=True, help="Recovery private key file"
    )

    # Serve command
    subparsers.add_parser("serve", help="Run the HTTP server")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)

    commands = {
        "keygen": cmd_keygen,
        "sign-message": cmd_sign_message,
        "rotation-proof": cmd_rotation_proof,
        "revocation-proof": cmd_revocation_proof,
        "serve": cmd_serve,
    }

    try:
        return commands[args.command](args)
    except (OSError, ValueError, ValidationException) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
