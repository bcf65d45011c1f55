"""Active Directory helper client based on ldap3."""
from __future__ import annotations

import contextlib
import copy
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

import yaml
from ldap3 import ALL, LEVEL, MODIFY_REPLACE, SUBTREE, Connection, Server
from ldap3.utils.conv import escape_filter_chars

from .config import LDAPConfig

UAC_NORMAL_ACCOUNT = 512
UAC_ACCOUNTDISABLE = 2

_USER_FILTER = "(&(objectClass=user)(objectCategory=person))"
_DEFAULT_USER_ATTRIBUTES = (
    "sAMAccountName",
    "displayName",
    "givenName",
    "sn",
    "mail",
    "title",
    "department",
    "company",
    "description",
    "userPrincipalName",
    "userAccountControl",
    "lockoutTime",
    "memberOf",
)


class DirectoryError(RuntimeError):
    """Raised when the directory rejects an operation."""


class EntryNotFoundError(DirectoryError, LookupError):
    """Raised when a user or group cannot be found."""


def _rdn(distinguished_name: str) -> str:
    rdn = distinguished_name.split(",", 1)[0].strip()
    if not rdn:
        raise DirectoryError(f"Invalid distinguished name: {distinguished_name!r}")
    return rdn


def _uac_value(raw: Any) -> int:
    try:
        return int(raw) if raw not in (None, "") else UAC_NORMAL_ACCOUNT
    except (TypeError, ValueError):
        return UAC_NORMAL_ACCOUNT


def is_disabled(user: Dict[str, Any]) -> bool:
    return bool(_uac_value(user.get("userAccountControl")) & UAC_ACCOUNTDISABLE)


class MockDirectory:
    """Lightweight directory emulator used when ldap3 connectivity isn't available."""

    def __init__(self, data_file: Optional[Path]):
        self.data_file = data_file
        self._data: Dict[str, Any] = {
            "tree": {},
            "users": [],
            "groups": [],
        }
        self._load()

    def _load(self) -> None:
        if self.data_file and self.data_file.exists():
            with self.data_file.open("r", encoding="utf-8") as handle:
                self._data = yaml.safe_load(handle) or self._data
        self._data.setdefault("tree", {"name": "", "children": []})
        self._data.setdefault("users", [])
        self._data.setdefault("groups", [])

    def _save(self) -> None:
        if not self.data_file:
            return
        self.data_file.parent.mkdir(parents=True, exist_ok=True)
        with self.data_file.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(self._data, handle, sort_keys=False, indent=2)

    # Users ---------------------------------------------------------------
    def _find(self, account: str) -> Optional[Dict[str, Any]]:
        lowered = account.lower()
        for user in self._data.get("users", []):
            attrs = user.get("attributes", {})
            if str(attrs.get("sAMAccountName", "")).lower() == lowered:
                return user
        return None

    def _require(self, account: str) -> Dict[str, Any]:
        user = self._find(account)
        if user is None:
            raise EntryNotFoundError(f"User not found: {account}")
        return user

    @staticmethod
    def _record(user: Dict[str, Any], attributes: Iterable[str]) -> Dict[str, Any]:
        attrs = user.get("attributes", {})
        record: Dict[str, Any] = {"distinguishedName": user.get("distinguished_name")}
        for attribute in attributes:
            if attribute in attrs:
                record[attribute] = copy.deepcopy(attrs[attribute])
        return record

    def search_users(
        self, query: str, attributes: Iterable[str], disabled_only: bool = False
    ) -> List[Dict[str, Any]]:
        lowered = query.lower()
        results: List[Dict[str, Any]] = []
        for user in self._data.get("users", []):
            attrs = user.get("attributes", {})
            haystack = " ".join(
                str(attrs.get(key, "")) for key in ("displayName", "sAMAccountName", "mail")
            ).lower()
            if lowered and lowered not in haystack:
                continue
            if disabled_only and not is_disabled(attrs):
                continue
            results.append(self._record(user, attributes))
        return results

    def get_user(self, account: str, attributes: Iterable[str]) -> Optional[Dict[str, Any]]:
        user = self._find(account)
        return self._record(user, attributes) if user else None

    def add_user(self, distinguished_name: str, attributes: Dict[str, Any]) -> None:
        account = str(attributes.get("sAMAccountName", ""))
        if account and self._find(account):
            raise DirectoryError(f"User already exists: {account}")
        attrs = copy.deepcopy(attributes)
        attrs.setdefault("memberOf", [])
        self._data.setdefault("users", []).append(
            {"distinguished_name": distinguished_name, "attributes": attrs}
        )
        self._save()

    def modify_user(self, account: str, changes: Dict[str, Any]) -> None:
        user = self._require(account)
        attrs = user.setdefault("attributes", {})
        for key, value in changes.items():
            if value is None:
                attrs.pop(key, None)
            else:
                attrs[key] = value
        self._save()

    def move_user(self, account: str, target_ou: str) -> str:
        user = self._require(account)
        old_dn = str(user.get("distinguished_name"))
        new_dn = f"{_rdn(old_dn)},{target_ou}"
        user["distinguished_name"] = new_dn
        for group in self._data.get("groups", []):
            members = group.get("members", []) or []
            group["members"] = [new_dn if member == old_dn else member for member in members]
        self._save()
        return new_dn

    def delete_user(self, account: str) -> bool:
        users = self._data.get("users", [])
        user = self._find(account)
        if user is None:
            return False
        users.remove(user)
        dn = user.get("distinguished_name")
        for group in self._data.get("groups", []):
            group["members"] = [m for m in group.get("members", []) or [] if m != dn]
        self._save()
        return True

    # Groups --------------------------------------------------------------
    def list_groups(self, query: Optional[str] = None, limit: int = 25) -> List[Dict[str, Any]]:
        groups: List[Dict[str, Any]] = []
        lowered_query = query.lower() if query else None
        for group in self._data.get("groups", []):
            name = str(group.get("name") or "")
            dn = str(group.get("distinguishedName") or "")
            if lowered_query and lowered_query not in name.lower() and lowered_query not in dn.lower():
                continue
            groups.append(
                {
                    "name": name,
                    "distinguishedName": dn,
                    "description": group.get("description"),
                    "members": list(group.get("members", []) or []),
                }
            )
            if len(groups) >= limit:
                break
        return groups

    def _group(self, group_dn: str) -> Dict[str, Any]:
        for group in self._data.get("groups", []):
            if str(group.get("distinguishedName", "")).lower() == group_dn.lower():
                return group
        raise EntryNotFoundError(f"Group not found: {group_dn}")

    def set_membership(self, group_dn: str, member_dn: str, present: bool) -> None:
        group = self._group(group_dn)
        members = [m for m in group.get("members", []) or [] if m != member_dn]
        if present:
            members.append(member_dn)
        group["members"] = members
        for user in self._data.get("users", []):
            if user.get("distinguished_name") != member_dn:
                continue
            attrs = user.setdefault("attributes", {})
            member_of = [g for g in attrs.get("memberOf", []) or [] if g != group["distinguishedName"]]
            if present:
                member_of.append(group["distinguishedName"])
            attrs["memberOf"] = member_of
        self._save()

    # Organisational units ------------------------------------------------
    def organizational_units(self) -> List[str]:
        entries: List[str] = []

        def _walk(node: Dict[str, Any]) -> None:
            name = node.get("name")
            if name and str(name).upper().startswith("OU="):
                entries.append(str(name))
            for child in node.get("children", []) or []:
                _walk(child)

        _walk(self._data.get("tree") or {})
        return sorted(dict.fromkeys(entries))

    def tree_for(self, base_dn: str, depth: int) -> Dict[str, Any]:
        tree = self._data.get("tree") or {"name": base_dn, "children": []}
        subtree = self._find_subtree(tree, base_dn) if base_dn else tree
        if not subtree:
            subtree = {"name": base_dn, "children": []}
        return self._trim_tree(subtree, depth)

    def _find_subtree(self, node: Dict[str, Any], target: str) -> Optional[Dict[str, Any]]:
        if not target or node.get("name") == target:
            return node
        for child in node.get("children", []) or []:
            found = self._find_subtree(child, target)
            if found:
                return found
        return None

    def _trim_tree(self, node: Dict[str, Any], depth: int) -> Dict[str, Any]:
        result: Dict[str, Any] = {"name": node.get("name"), "children": []}
        if depth <= 0:
            return result
        for child in node.get("children", []) or []:
            result["children"].append(self._trim_tree(child, depth - 1))
        return result

    def stats(self) -> Dict[str, int]:
        users = self._data.get("users", [])
        return {
            "usersCount": len(users),
            "disabledCount": sum(1 for user in users if is_disabled(user.get("attributes", {}))),
            "groupsCount": len(self._data.get("groups", [])),
        }


class ADClient:
    """Wrapper around ldap3 that exposes high-level AD operations.

    Accounts are addressed by ``sAMAccountName``; groups and OUs by their
    distinguished names.
    """

    def __init__(self, config: LDAPConfig):
        self.config = config
        self._mock_directory: Optional[MockDirectory] = None
        self.connection: Optional[Connection] = None

        if config.server_uri.startswith("mock://"):
            self._mock_directory = MockDirectory(config.mock_data_file)
        else:
            self.server = Server(config.server_uri, use_ssl=config.use_ssl, get_info=ALL)
            self.connection = Connection(
                self.server,
                user=config.user_dn,
                password=config.password,
                auto_bind=True,
            )

    def close(self) -> None:
        if self.connection and self.connection.bound:
            self.connection.unbind()

    def __enter__(self) -> "ADClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    # Lookup --------------------------------------------------------------
    def search_users(
        self,
        query: str,
        attributes: Optional[List[str]] = None,
        disabled_only: bool = False,
        search_base: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        attribute_list = sorted({*_DEFAULT_USER_ATTRIBUTES, *(attributes or [])})

        if self._mock_directory:
            return self._mock_directory.search_users(query or "", attribute_list, disabled_only)

        assert self.connection is not None
        parts = [_USER_FILTER]
        if query:
            escaped = escape_filter_chars(query)
            parts.append(
                f"(|(displayName=*{escaped}*)(sAMAccountName=*{escaped}*)(mail=*{escaped}*))"
            )
        if disabled_only:
            parts.append("(userAccountControl:1.2.840.113556.1.4.803:=2)")
        self.connection.search(
            search_base=search_base or self.config.base_dn,
            search_filter=f"(&{''.join(parts)})",
            search_scope=SUBTREE,
            attributes=attribute_list,
        )
        return [self._entry_to_dict(entry, attribute_list) for entry in self.connection.entries]

    def get_user(
        self, account: str, attributes: Optional[List[str]] = None
    ) -> Optional[Dict[str, Any]]:
        attribute_list = sorted({*_DEFAULT_USER_ATTRIBUTES, *(attributes or [])})

        if self._mock_directory:
            return self._mock_directory.get_user(account, attribute_list)

        assert self.connection is not None
        self.connection.search(
            search_base=self.config.base_dn,
            search_filter=f"(&{_USER_FILTER}(sAMAccountName={escape_filter_chars(account)}))",
            search_scope=SUBTREE,
            attributes=attribute_list,
        )
        if not self.connection.entries:
            return None
        return self._entry_to_dict(self.connection.entries[0], attribute_list)

    def _require_user(self, account: str) -> Dict[str, Any]:
        user = self.get_user(account)
        if not user:
            raise EntryNotFoundError(f"User not found: {account}")
        return user

    # Account state -------------------------------------------------------
    def disable_account(self, account: str, target_ou: Optional[str] = None) -> None:
        if target_ou and target_ou.strip():
            self.move_account(account, target_ou.strip())
        user = self._require_user(account)
        current = _uac_value(user.get("userAccountControl"))
        self._replace(account, user, {"userAccountControl": current | UAC_ACCOUNTDISABLE})

    def enable_account(self, account: str) -> None:
        user = self._require_user(account)
        current = _uac_value(user.get("userAccountControl"))
        self._replace(account, user, {"userAccountControl": current & ~UAC_ACCOUNTDISABLE})

    def unlock_account(self, account: str) -> None:
        user = self._require_user(account)
        self._replace(account, user, {"lockoutTime": 0})

    def move_account(self, account: str, target_ou: str) -> str:
        target_ou = target_ou.strip()
        if not target_ou:
            raise DirectoryError("A target OU is required to move an account.")
        if self._mock_directory:
            self._require_user(account)
            return self._mock_directory.move_user(account, target_ou)

        user = self._require_user(account)
        assert self.connection is not None
        dn = str(user["distinguishedName"])
        moved = self.connection.modify_dn(dn, _rdn(dn), new_superior=target_ou)
        self._raise_for_result(moved, f"move {account} to {target_ou}")
        return f"{_rdn(dn)},{target_ou}"

    # Provisioning --------------------------------------------------------
    def create_user(
        self,
        account: str,
        password: Optional[str] = None,
        parent_ou: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
        enable_account: bool = True,
    ) -> Dict[str, str]:
        account = account.strip()
        if not account:
            raise DirectoryError("sAMAccountName is required to create a user.")
        extra = dict(attributes or {})
        container = parent_ou or self.config.user_ou or self.config.base_dn
        common_name = str(extra.pop("cn", "") or extra.get("displayName") or account)
        distinguished_name = f"CN={common_name},{container}"

        payload = {
            "sAMAccountName": account,
            "userPrincipalName": f"{account}@{self._domain_from_dn(self.config.base_dn)}",
            "displayName": common_name,
            **{key: value for key, value in extra.items() if value not in (None, "")},
        }

        if self._mock_directory:
            record = copy.deepcopy(payload)
            record["userAccountControl"] = (
                UAC_NORMAL_ACCOUNT if enable_account else UAC_NORMAL_ACCOUNT | UAC_ACCOUNTDISABLE
            )
            self._mock_directory.add_user(distinguished_name, record)
        else:
            assert self.connection is not None
            added = self.connection.add(
                dn=distinguished_name,
                object_class=["top", "person", "organizationalPerson", "user"],
                attributes=payload,
            )
            self._raise_for_result(added, f"create {account}")
            if password:
                self.connection.extend.microsoft.modify_password(distinguished_name, password)
            if enable_account:
                enabled = self.connection.modify(
                    distinguished_name,
                    {"userAccountControl": [(MODIFY_REPLACE, [UAC_NORMAL_ACCOUNT])]},
                )
                self._raise_for_result(enabled, f"enable {account}")

        return {"distinguishedName": distinguished_name, "sAMAccountName": account}

    def update_user(self, account: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        # Account state has dedicated operations.
        filtered = {
            key: value
            for key, value in changes.items()
            if key not in {"userAccountControl", "sAMAccountName", "distinguishedName", "memberOf"}
        }
        user = self._require_user(account)
        if filtered:
            self._replace(account, user, filtered)
        return self._require_user(account)

    def reset_password(self, account: str, new_password: str) -> None:
        if not new_password:
            raise DirectoryError("A new password is required.")
        user = self._require_user(account)
        if self._mock_directory:
            self._mock_directory.modify_user(account, {"pwdLastSet": 0})
            return
        assert self.connection is not None
        changed = self.connection.extend.microsoft.modify_password(
            str(user["distinguishedName"]), new_password
        )
        self._raise_for_result(changed, f"reset password for {account}")

    def delete_user(self, account: str) -> bool:
        if self._mock_directory:
            return self._mock_directory.delete_user(account)

        user = self.get_user(account)
        if not user:
            return False
        assert self.connection is not None
        deleted = self.connection.delete(str(user["distinguishedName"]))
        self._raise_for_result(deleted, f"delete {account}")
        return True

    # Groups --------------------------------------------------------------
    def list_groups(self, query: Optional[str] = None, limit: int = 25) -> List[Dict[str, Any]]:
        limit = self._clamp_limit(limit)
        if self._mock_directory:
            return self._mock_directory.list_groups(query, limit)

        assert self.connection is not None
        base_dn = self.config.group_search_base or self.config.base_dn
        if query:
            escaped = escape_filter_chars(query)
            filter_str = (
                f"(&(objectClass=group)"
                f"(|(cn=*{escaped}*)(name=*{escaped}*)(sAMAccountName=*{escaped}*)))"
            )
        else:
            filter_str = "(objectClass=group)"

        self.connection.search(
            search_base=base_dn,
            search_filter=filter_str,
            search_scope=SUBTREE,
            attributes=["cn", "sAMAccountName", "description", "member"],
            size_limit=limit,
        )
        groups: List[Dict[str, Any]] = []
        for entry in self.connection.entries:
            record = self._entry_to_dict(entry, ["cn", "description", "member"])
            members = record.get("member") or []
            groups.append(
                {
                    "name": record.get("cn") or record["distinguishedName"],
                    "distinguishedName": record["distinguishedName"],
                    "description": record.get("description"),
                    "members": members if isinstance(members, list) else [members],
                }
            )
            if len(groups) >= limit:
                break
        return groups

    def add_member(self, group_dn: str, member_dn: str) -> None:
        if self._mock_directory:
            self._mock_directory.set_membership(group_dn, member_dn, present=True)
            return
        assert self.connection is not None
        added = self.connection.extend.microsoft.add_members_to_groups([member_dn], [group_dn])
        self._raise_for_result(added, f"add {member_dn} to {group_dn}")

    def remove_member(self, group_dn: str, member_dn: str) -> None:
        if self._mock_directory:
            self._mock_directory.set_membership(group_dn, member_dn, present=False)
            return
        assert self.connection is not None
        removed = self.connection.extend.microsoft.remove_members_from_groups(
            [member_dn], [group_dn]
        )
        self._raise_for_result(removed, f"remove {member_dn} from {group_dn}")

    # Organisational units -----------------------------------------------
    def list_organizational_units(self) -> List[str]:
        if self._mock_directory:
            return self._mock_directory.organizational_units()

        assert self.connection is not None
        self.connection.search(
            search_base=self.config.base_dn,
            search_filter="(objectClass=organizationalUnit)",
            search_scope=SUBTREE,
            attributes=["ou"],
        )
        return sorted({str(entry.entry_dn) for entry in self.connection.entries})

    def fetch_directory_tree(self, base_dn: Optional[str] = None, depth: int = 2) -> Dict[str, Any]:
        if self._mock_directory:
            return self._mock_directory.tree_for(base_dn or self.config.base_dn, depth)

        assert self.connection is not None
        base_dn = base_dn or self.config.base_dn
        tree: Dict[str, Any] = {"name": base_dn, "children": []}

        def _walk(current_dn: str, current_depth: int) -> List[Dict[str, Any]]:
            if current_depth == 0:
                return []
            self.connection.search(
                search_base=current_dn,
                search_filter="(objectClass=organizationalUnit)",
                search_scope=LEVEL,
                attributes=["ou"],
            )
            children = []
            for dn in [str(entry.entry_dn) for entry in self.connection.entries]:
                children.append({"name": dn, "children": _walk(dn, current_depth - 1)})
            return children

        tree["children"] = _walk(base_dn, depth)
        return tree

    def get_stats(self) -> Dict[str, int]:
        if self._mock_directory:
            return self._mock_directory.stats()

        return {
            "usersCount": self._count(_USER_FILTER),
            "disabledCount": self._count(
                f"(&{_USER_FILTER}(userAccountControl:1.2.840.113556.1.4.803:=2))"
            ),
            "groupsCount": self._count("(objectClass=group)"),
        }

    # Utilities -----------------------------------------------------------
    def _replace(self, account: str, user: Dict[str, Any], changes: Dict[str, Any]) -> None:
        if self._mock_directory:
            self._mock_directory.modify_user(account, changes)
            return
        assert self.connection is not None
        modifications = {
            key: [(MODIFY_REPLACE, value if isinstance(value, list) else [value])]
            for key, value in changes.items()
        }
        modified = self.connection.modify(str(user["distinguishedName"]), modifications)
        self._raise_for_result(modified, f"update {account}")

    def _count(self, search_filter: str) -> int:
        assert self.connection is not None
        results = self.connection.extend.standard.paged_search(
            search_base=self.config.base_dn,
            search_filter=search_filter,
            search_scope=SUBTREE,
            attributes=[],
            paged_size=500,
            generator=True,
        )
        return sum(1 for entry in results if entry.get("type") == "searchResEntry")

    def _raise_for_result(self, succeeded: bool, operation: str) -> None:
        if succeeded:
            return
        result = (self.connection.result if self.connection else None) or {}
        description = result.get("description", "Unknown error")
        message = result.get("message")
        raise DirectoryError(
            f"Active Directory rejected the request to {operation} ({description})."
            + (f" {message}" if message else "")
        )

    @staticmethod
    def _entry_to_dict(entry: Any, attributes: Iterable[str]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"distinguishedName": str(entry.entry_dn)}
        for attribute in attributes:
            if attribute in entry:
                value = entry[attribute].value
                payload[attribute] = list(value) if isinstance(value, (list, tuple)) else value
        return payload

    @staticmethod
    def _domain_from_dn(base_dn: str) -> str:
        parts = [segment.split("=")[1] for segment in base_dn.split(",") if segment.upper().startswith("DC=")]
        return ".".join(parts) or "local"

    @staticmethod
    def _clamp_limit(value: int, maximum: int = 100) -> int:
        try:
            numeric = int(value)
        except (TypeError, ValueError):
            numeric = 25
        return max(1, min(numeric, maximum))


@contextlib.contextmanager
def ad_client(config: LDAPConfig) -> Iterator[ADClient]:
    client = ADClient(config)
    try:
        yield client
    finally:
        client.close()


class LdapAccountDirectory:
    """Account-state operations used by the scheduler worker.

    Opens a fresh directory connection for every call so a long-running
    worker never holds a stale bind.
    """

    def __init__(self, config: LDAPConfig) -> None:
        self.config = config

    def disable_account(self, user_id: str) -> None:
        with ad_client(self.config) as client:
            client.disable_account(user_id)

    def enable_account(self, user_id: str) -> None:
        with ad_client(self.config) as client:
            client.enable_account(user_id)


__all__ = [
    "ADClient",
    "DirectoryError",
    "EntryNotFoundError",
    "LdapAccountDirectory",
    "MockDirectory",
    "UAC_ACCOUNTDISABLE",
    "UAC_NORMAL_ACCOUNT",
    "ad_client",
    "is_disabled",
]
