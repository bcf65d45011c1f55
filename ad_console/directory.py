"""Interactive directory mutations, each recorded in the audit trail."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .ad_client import EntryNotFoundError, ad_client
from .audit import AuditLog
from .config import LDAPConfig
from .models import AuditAction

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DirectoryAdmin:
    """Administrative operations performed on behalf of an operator.

    Every mutation writes one audit entry, successful or not. Failures are
    re-raised after auditing so the caller can report the raw error.
    """

    def __init__(self, config: LDAPConfig, audit: AuditLog) -> None:
        self.config = config
        self.audit = audit

    def _audited(
        self,
        action: AuditAction,
        actor: str,
        target: str,
        details: Optional[Dict[str, Any]],
        operation: Callable[[Any], T],
    ) -> T:
        try:
            with ad_client(self.config) as client:
                result = operation(client)
        except Exception as exc:
            logger.warning("%s on %s by %s failed: %s", action.value, target, actor, exc)
            self.audit.log(
                action=action,
                actor=actor,
                target=target,
                details=details,
                success=False,
                error=str(exc),
            )
            raise
        self.audit.log(action=action, actor=actor, target=target, details=details, success=True)
        return result

    # Read-only -----------------------------------------------------------
    def search_users(self, query: str, disabled_only: bool = False) -> List[Dict[str, Any]]:
        with ad_client(self.config) as client:
            return client.search_users(query, disabled_only=disabled_only)

    def get_user(self, account: str) -> Optional[Dict[str, Any]]:
        with ad_client(self.config) as client:
            return client.get_user(account)

    def list_groups(self, query: Optional[str] = None, limit: int = 25) -> List[Dict[str, Any]]:
        with ad_client(self.config) as client:
            return client.list_groups(query, limit)

    def list_organizational_units(self) -> List[str]:
        with ad_client(self.config) as client:
            return client.list_organizational_units()

    def directory_tree(self, base_dn: Optional[str] = None, depth: int = 2) -> Dict[str, Any]:
        with ad_client(self.config) as client:
            return client.fetch_directory_tree(base_dn, depth)

    def stats(self) -> Dict[str, int]:
        with ad_client(self.config) as client:
            return client.get_stats()

    # Mutations -----------------------------------------------------------
    def create_user(
        self,
        actor: str,
        account: str,
        password: Optional[str] = None,
        parent_ou: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        return self._audited(
            AuditAction.USER_CREATE,
            actor,
            account,
            {"parentOu": parent_ou or self.config.user_ou, "fields": sorted(attributes or {})},
            lambda client: client.create_user(account, password, parent_ou, attributes),
        )

    def delete_user(self, actor: str, account: str) -> bool:
        def _delete(client: Any) -> bool:
            if not client.delete_user(account):
                raise EntryNotFoundError(f"User not found: {account}")
            return True

        return self._audited(AuditAction.USER_DELETE, actor, account, None, _delete)

    def disable_user(self, actor: str, account: str, target_ou: Optional[str] = None) -> None:
        target_ou = target_ou or None
        self._audited(
            AuditAction.USER_DISABLE,
            actor,
            account,
            {"targetOu": target_ou} if target_ou else None,
            lambda client: client.disable_account(account, target_ou),
        )

    def enable_user(self, actor: str, account: str) -> None:
        self._audited(
            AuditAction.USER_ENABLE, actor, account, None, lambda client: client.enable_account(account)
        )

    def unlock_user(self, actor: str, account: str) -> None:
        self._audited(
            AuditAction.USER_UNLOCK, actor, account, None, lambda client: client.unlock_account(account)
        )

    def move_user(self, actor: str, account: str, target_ou: str) -> str:
        return self._audited(
            AuditAction.USER_MOVE,
            actor,
            account,
            {"targetOuDn": target_ou},
            lambda client: client.move_account(account, target_ou),
        )

    def update_user(self, actor: str, account: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._audited(
            AuditAction.USER_UPDATE,
            actor,
            account,
            {"fields": sorted(changes)},
            lambda client: client.update_user(account, changes),
        )

    def reset_password(self, actor: str, account: str, new_password: str) -> None:
        self._audited(
            AuditAction.USER_RESET_PASSWORD,
            actor,
            account,
            None,
            lambda client: client.reset_password(account, new_password),
        )

    def add_group_member(self, actor: str, group_dn: str, member_dn: str) -> None:
        self._audited(
            AuditAction.GROUP_MEMBER_ADD,
            actor,
            group_dn,
            {"memberDn": member_dn},
            lambda client: client.add_member(group_dn, member_dn),
        )

    def remove_group_member(self, actor: str, group_dn: str, member_dn: str) -> None:
        self._audited(
            AuditAction.GROUP_MEMBER_REMOVE,
            actor,
            group_dn,
            {"memberDn": member_dn},
            lambda client: client.remove_member(group_dn, member_dn),
        )


__all__ = ["DirectoryAdmin"]
