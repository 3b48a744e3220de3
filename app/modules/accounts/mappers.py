from __future__ import annotations

from app.core.clients.upstream import AccountCredentials
from app.core.crypto import TokenEncryptor
from app.db.models import Account
from app.modules.accounts.schemas import AccountImportEntry


def credentials_from_account(account: Account, encryptor: TokenEncryptor) -> AccountCredentials:
    return AccountCredentials(
        account_id=account.id,
        team_id=account.team_id,
        secure_c_ses=encryptor.decrypt(account.secure_c_ses_encrypted),
        host_c_oses=encryptor.decrypt_optional(account.host_c_oses_encrypted),
        csesidx=account.csesidx,
        user_agent=account.user_agent,
    )


def account_from_import(entry: AccountImportEntry, encryptor: TokenEncryptor) -> Account:
    return Account(
        id=entry.id,
        team_id=entry.team_id,
        secure_c_ses_encrypted=encryptor.encrypt(entry.secure_c_ses),
        host_c_oses_encrypted=encryptor.encrypt_optional(entry.host_c_oses),
        csesidx=entry.csesidx,
        user_agent=entry.user_agent,
        available=entry.available,
        unavailable_reason=None,
    )
