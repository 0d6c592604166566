"""Load mail accounts and spam rules from their JSON files.

Both files are owned by the user; the pipeline re-reads them at the start of
every run and never writes them.
"""

import json
import logging
from pathlib import Path

from spamguard.schemas.email import Account, AccountsFile, Rule, RulesFile

logger = logging.getLogger(__name__)


def load_accounts(path: str | Path) -> list[Account]:
    """Load accounts from ``{"accounts": [...]}``. Missing file means no accounts."""
    path = Path(path)
    if not path.exists():
        logger.info("Accounts file not found at %s, no accounts configured", path)
        return []

    data = AccountsFile.model_validate(json.loads(path.read_text()))
    logger.info("Loaded %d account(s) from %s", len(data.accounts), path)
    return data.accounts


def load_rules(path: str | Path) -> list[Rule]:
    """Load rules from ``{"rules": [...]}``. Missing file means no rules."""
    path = Path(path)
    if not path.exists():
        logger.info("Rules file not found at %s, using no rules", path)
        return []

    data = RulesFile.model_validate(json.loads(path.read_text()))
    logger.info(
        "Loaded %d rule(s) from %s (%d enabled)",
        len(data.rules),
        path,
        sum(1 for r in data.rules if r.enabled),
    )
    return data.rules


def find_account(accounts: list[Account], key: str) -> Account | None:
    """Find an account by id, name or username."""
    for account in accounts:
        if key in (account.id, account.name, account.connection.username):
            return account
    return None
