"""Finds OAuth secrets still stored as plaintext and, with ``--apply``, re-encrypts them.

Without ``--apply`` the run is read-only: every stored value goes through the cipher with
``NoMigration`` so only the counts are reported.
"""
import argparse
import sys
from collections import Counter
from dataclasses import dataclass

from sqlalchemy import select

from calendar_connector.core.config import settings
from calendar_connector.core.credential_cipher import (
    NO_MIGRATION,
    CredentialCipher,
    DecryptionError,
    MigrationPolicy,
    PersistMigration,
    is_encrypted,
)
from calendar_connector.domain.models.integration import Integration
from calendar_connector.domain.models.integration_credential import IntegrationCredential
from calendar_connector.infrastructure.db.session import SessionLocal

SECRET_FIELDS = (
    (Integration, "oauth_client_secret_encrypted"),
    (IntegrationCredential, "access_token_encrypted"),
    (IntegrationCredential, "refresh_token_encrypted"),
)


@dataclass
class MigrationReport:
    encrypted: Counter
    legacy: Counter
    unreadable: Counter

    def as_lines(self) -> list[str]:
        lines = []
        for model, field in SECRET_FIELDS:
            key = f"{model.__tablename__}.{field}"
            lines.append(
                f"{key}: encrypted={self.encrypted[key]} legacy={self.legacy[key]} unreadable={self.unreadable[key]}"
            )
        return lines


def _write_field(db, row, field: str):
    def _write(value: str) -> None:
        setattr(row, field, value)
        db.add(row)

    return _write


def migrate_legacy_secrets(db, cipher: CredentialCipher, *, apply: bool) -> MigrationReport:
    report = MigrationReport(encrypted=Counter(), legacy=Counter(), unreadable=Counter())
    for model, field in SECRET_FIELDS:
        key = f"{model.__tablename__}.{field}"
        for row in db.execute(select(model)).scalars():
            value = getattr(row, field)
            if not value:
                continue
            if is_encrypted(value):
                try:
                    cipher.decrypt(value, NO_MIGRATION)
                except DecryptionError:
                    report.unreadable[key] += 1
                    continue
                report.encrypted[key] += 1
                continue

            policy: MigrationPolicy = PersistMigration(_write_field(db, row, field), label=key) if apply else NO_MIGRATION
            cipher.decrypt(value, policy)
            report.legacy[key] += 1

    if apply:
        db.commit()
    return report


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--apply", action="store_true", help="re-encrypt legacy plaintext secrets in place")
    args = parser.parse_args(argv)

    cipher = CredentialCipher(settings.cipher_master_secret)
    with SessionLocal() as db:
        report = migrate_legacy_secrets(db, cipher, apply=args.apply)

    for line in report.as_lines():
        print(line)
    if any(report.unreadable.values()):
        print("Some encrypted values could not be decrypted with the configured key.")
        return 1
    if not args.apply and any(report.legacy.values()):
        print("Legacy plaintext found. Re-run with --apply to encrypt it.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
