#!/usr/bin/env python3
"""Bootstrap an admin account and, optionally, the RS256 signing key pair.

Usage:
    # Write keys/private-key.pem and keys/public-key.pem, then create the admin:
    python scripts/bootstrap_admin.py --generate-keys --email admin@example.com \
        --username admin --password 'SecurePassword123!'

    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='SecurePassword123!' python scripts/bootstrap_admin.py

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_USERNAME: Username for the admin user (defaults to the email local part)
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    JWT_PRIVATE_KEY_PATH / JWT_PUBLIC_KEY_PATH: where --generate-keys writes the pair
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_PASSWORD_LENGTH = 8


def write_signing_keys(private_path: Path, public_path: Path, *, force: bool = False) -> str:
    """Generate an RSA pair at the configured paths and return its ``kid``."""
    from adminauth.service.signer import SigningKeys, generate_signing_keys

    if not force and (private_path.exists() or public_path.exists()):
        raise FileExistsError(
            f"{private_path} or {public_path} already exists; pass --force to overwrite"
        )
    private_pem, public_pem = generate_signing_keys()
    private_path.parent.mkdir(parents=True, exist_ok=True)
    public_path.parent.mkdir(parents=True, exist_ok=True)
    private_path.write_bytes(private_pem)
    private_path.chmod(0o600)
    public_path.write_bytes(public_pem)
    return SigningKeys.from_pem(private_pem, public_pem).kid


def bootstrap_admin(email: str, username: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin user or promote an existing one.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from adminauth.service.accounts import normalize_email
    from adminauth.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == "admin":
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        runtime.store.update_user(existing_user.id, role="admin", is_active=True)
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(email, username, role="admin")
    runtime.accounts.set_password(user.id, password)
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--generate-keys",
        action="store_true",
        help="Write a new RSA signing key pair to the configured key paths",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite existing key files when generating keys",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if args.generate_keys:
        from adminauth.config import get_settings

        settings = get_settings()
        private_path = Path(settings.jwt_private_key_path)
        public_path = Path(settings.jwt_public_key_path)
        if args.dry_run:
            print(f"[DRY RUN] Would write signing keys to {private_path} and {public_path}")
        else:
            try:
                kid = write_signing_keys(private_path, public_path, force=args.force)
            except (OSError, ValueError) as e:
                print(f"Error: {e}")
                sys.exit(1)
            print(f"Wrote signing keys (kid: {kid})")
            print(f"  Private: {private_path}")
            print(f"  Public:  {public_path}")
        if not args.email:
            return

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if len(args.password) < MIN_PASSWORD_LENGTH:
        print(f"Error: Password must be at least {MIN_PASSWORD_LENGTH} characters long")
        sys.exit(1)

    username = args.username or args.email.split("@", 1)[0]

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/adminauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Revocations and codes are not touched here, so Redis is optional
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        from adminauth.config import reset_settings_cache

        reset_settings_cache()
        result = bootstrap_admin(args.email, username, args.password, args.dry_run)

        if result["status"] == "created":
            print("\nAdmin user created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "promoted":
            print("\nExisting user promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - user is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
