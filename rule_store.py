"""
Rule Store: validated CRUD over the persisted document
"""

import copy
import os
from typing import Any, Callable, Dict, List, Optional

from database import StoreDatabase
from exceptions import ConflictError, NotFoundError, ValidationError
from models import ChangeEvent, ForwardingProxyConfig, Group, HostEntry, ImportResult, StoreDocument, new_id
from notifier import ChangeNotifier
from transfer import parse_hosts_text, validate_json_import
from validation import validate_group_name, validate_host_rule, validate_proxy_config
from logger import logger


IMPORT_MODES = ("merge", "replace", "new_group")


class _NoChange:
    """Returned by a change function that decided nothing needs writing"""

    def __init__(self, value):
        self.value = value


class RuleStore:
    """
    Groups, the active group set and the forwarding proxy.

    Every mutation is a read-modify-write of the whole document guarded by the
    document revision: if another context wrote in between, the mutation is
    re-read and re-applied, and after ``conflict_retries`` lost races a
    ConflictError is raised. Validation and not-found failures never escape;
    they come back as False / None.
    """

    def __init__(self, database: StoreDatabase, notifier: Optional[ChangeNotifier] = None,
                 conflict_retries: int = None):
        self.database = database
        self.notifier = notifier
        self.conflict_retries = conflict_retries if conflict_retries is not None else int(os.getenv('STORE_CONFLICT_RETRIES', '3'))

        self._validate_configuration()

    def _validate_configuration(self):
        if self.conflict_retries < 0 or self.conflict_retries > 20:
            raise ValueError(f"STORE_CONFLICT_RETRIES must be between 0 and 20, got {self.conflict_retries}")

    # Readers

    def snapshot(self) -> StoreDocument:
        return self.database.load()

    def get_groups(self) -> List[Group]:
        return self.database.load().groups

    def get_group(self, group_id: str) -> Optional[Group]:
        return self.database.load().find_group(group_id)

    def get_active_groups(self) -> List[str]:
        return self.database.load().active_groups

    def get_forwarding_proxy(self) -> ForwardingProxyConfig:
        return self.database.load().proxy

    # Mutation plumbing

    def _mutate(self, operation: str, change: Callable[[StoreDocument], Any]):
        if self.notifier is not None and self.notifier.in_ui_dispatch():
            raise ValidationError("Store mutations are not allowed from change listeners")

        last_conflict = None
        for attempt in range(self.conflict_retries + 1):
            document = self.database.load()
            expected = document.revision
            result = change(document)
            if isinstance(result, _NoChange):
                return result.value

            try:
                revision = self.database.save(document, expected)
            except ConflictError as e:
                last_conflict = e
                logger.warning(f"Store conflict during {operation}, retrying",
                               attempt=attempt + 1,
                               expected_revision=e.expected_revision,
                               actual_revision=e.actual_revision)
                continue

            logger.store_mutation(operation, revision)
            if self.notifier is not None:
                self.notifier.notify(ChangeEvent(revision=revision, source="local", operation=operation))
            return result

        raise ConflictError(
            f"{operation} lost {self.conflict_retries + 1} consecutive write races",
            expected_revision=last_conflict.expected_revision if last_conflict else None,
            actual_revision=last_conflict.actual_revision if last_conflict else None
        )

    def _run(self, operation: str, change: Callable[[StoreDocument], Any], failure=False):
        try:
            return self._mutate(operation, change)
        except (ValidationError, NotFoundError) as e:
            logger.store_rejected(operation, str(e))
            return failure

    @staticmethod
    def _require_group(document: StoreDocument, group_id: str) -> Group:
        group = document.find_group(group_id)
        if group is None:
            raise NotFoundError(f"Group {group_id} not found")
        return group

    @staticmethod
    def _require_host(group: Group, host_id: str) -> HostEntry:
        host = group.find_host(host_id)
        if host is None:
            raise NotFoundError(f"Host {host_id} not found in group {group.id}")
        return host

    # Groups

    def add_group(self, group: Group, make_active: bool = True) -> bool:
        def change(document: StoreDocument):
            name = validate_group_name(group.name)
            if any(g.name == name for g in document.groups):
                raise ValidationError(f"Group name {name!r} already exists")
            if document.find_group(group.id) is not None:
                raise ValidationError(f"Group id {group.id} already exists")

            new_group = Group(id=group.id, name=name)
            for host in group.hosts:
                ip, domain = validate_host_rule(host.ip, host.domain)
                if new_group.has_pair(ip, domain):
                    raise ValidationError(f"Duplicate rule {ip} {domain}")
                new_group.hosts.append(HostEntry(id=host.id, ip=ip, domain=domain, enabled=host.enabled))

            document.groups.append(new_group)
            if make_active and new_group.id not in document.active_groups:
                document.active_groups.append(new_group.id)
            return True

        return self._run("add_group", change)

    def update_group(self, group_id: str, partial: Dict[str, Any]) -> bool:
        """Apply a partial update; only ``name`` is updatable here"""
        def change(document: StoreDocument):
            unknown = set(partial) - {"name"}
            if unknown:
                raise ValidationError(f"Unsupported group fields: {', '.join(sorted(unknown))}")
            group = self._require_group(document, group_id)
            if "name" not in partial:
                return _NoChange(True)

            name = validate_group_name(partial["name"])
            if name == group.name:
                return _NoChange(True)
            if any(g.id != group_id and g.name == name for g in document.groups):
                raise ValidationError(f"Group name {name!r} already exists")
            group.name = name
            return True

        return self._run("update_group", change)

    def rename_group(self, group_id: str, name: str) -> bool:
        return self.update_group(group_id, {"name": name})

    def delete_group(self, group_id: str) -> bool:
        def change(document: StoreDocument):
            self._require_group(document, group_id)
            document.groups = [g for g in document.groups if g.id != group_id]
            document.active_groups = [i for i in document.active_groups if i != group_id]
            return True

        return self._run("delete_group", change)

    def set_group_active(self, group_id: str, active: bool) -> bool:
        def change(document: StoreDocument):
            self._require_group(document, group_id)
            is_active = group_id in document.active_groups
            if is_active == active:
                return _NoChange(True)
            if active:
                document.active_groups.append(group_id)
            else:
                document.active_groups.remove(group_id)
            return True

        return self._run("set_group_active", change)

    # Hosts

    def add_host(self, group_id: str, host: HostEntry) -> bool:
        def change(document: StoreDocument):
            group = self._require_group(document, group_id)
            ip, domain = validate_host_rule(host.ip, host.domain)
            if group.has_pair(ip, domain):
                raise ValidationError(f"Duplicate rule {ip} {domain} in group {group.name!r}")
            if group.find_host(host.id) is not None:
                raise ValidationError(f"Host id {host.id} already exists")
            group.hosts.append(HostEntry(id=host.id, ip=ip, domain=domain, enabled=host.enabled))
            return True

        return self._run("add_host", change)

    def update_host(self, group_id: str, host_id: str, partial: Dict[str, Any]) -> Optional[HostEntry]:
        def change(document: StoreDocument):
            unknown = set(partial) - {"ip", "domain", "enabled"}
            if unknown:
                raise ValidationError(f"Unsupported host fields: {', '.join(sorted(unknown))}")
            group = self._require_group(document, group_id)
            host = self._require_host(group, host_id)

            ip, domain = validate_host_rule(partial.get("ip", host.ip), partial.get("domain", host.domain))
            if group.has_pair(ip, domain, exclude_id=host_id):
                raise ValidationError(f"Duplicate rule {ip} {domain} in group {group.name!r}")

            enabled = bool(partial.get("enabled", host.enabled))
            if (ip, domain, enabled) == (host.ip, host.domain, host.enabled):
                return _NoChange(copy.copy(host))
            host.ip, host.domain, host.enabled = ip, domain, enabled
            return copy.copy(host)

        return self._run("update_host", change, failure=None)

    def toggle_host(self, group_id: str, host_id: str, enabled: bool) -> bool:
        return self.update_host(group_id, host_id, {"enabled": enabled}) is not None

    def delete_host(self, group_id: str, host_id: str) -> bool:
        def change(document: StoreDocument):
            group = self._require_group(document, group_id)
            self._require_host(group, host_id)
            group.hosts = [h for h in group.hosts if h.id != host_id]
            return True

        return self._run("delete_host", change)

    # Forwarding proxy and UI flags

    def set_forwarding_proxy(self, config: ForwardingProxyConfig) -> bool:
        def change(document: StoreDocument):
            document.proxy = validate_proxy_config(copy.deepcopy(config))
            return True

        return self._run("set_forwarding_proxy", change)

    def set_show_add_group_form(self, show: bool) -> bool:
        def change(document: StoreDocument):
            if document.show_add_group_form == bool(show):
                return _NoChange(True)
            document.show_add_group_form = bool(show)
            return True

        return self._run("set_show_add_group_form", change)

    # Bulk import

    def import_hosts(self, group_id: str, text: str, skip_duplicates: bool = True,
                     enable: bool = True) -> ImportResult:
        """Import hosts-file text into a group in a single write"""
        entries, invalid = parse_hosts_text(text)

        def change(document: StoreDocument):
            result = ImportResult(invalid=list(invalid), skipped=len(invalid))
            group = self._require_group(document, group_id)

            for line_number, ip, domain in entries:
                existing = next((h for h in group.hosts if h.ip == ip and h.domain == domain), None)
                if existing is None:
                    group.hosts.append(HostEntry(ip=ip, domain=domain, enabled=enable))
                    result.imported += 1
                elif skip_duplicates:
                    result.skipped += 1
                    result.duplicates.append({"ip": ip, "domain": domain, "line": line_number})
                else:
                    existing.enabled = enable
                    result.imported += 1

            result.success = True
            result.message = (f"Imported {result.imported} rule(s), skipped {result.skipped} "
                              f"({len(result.duplicates)} duplicate, {len(result.invalid)} invalid)")
            if result.imported == 0:
                return _NoChange(result)
            return result

        try:
            return self._mutate("import_hosts", change)
        except (ValidationError, NotFoundError) as e:
            logger.store_rejected("import_hosts", str(e))
            return ImportResult(success=False, invalid=list(invalid), skipped=len(invalid), message=str(e))

    def import_json(self, data: Dict[str, Any], mode: str = "merge", new_group_name: str = None) -> ImportResult:
        """
        Import an export document.

        ``merge`` adds hosts to groups of the same name and creates missing
        groups; ``replace`` swaps all groups (and the proxy, when present)
        for the imported ones; ``new_group`` folds every imported host into
        one new group called ``new_group_name``.
        """
        def change(document: StoreDocument):
            if mode not in IMPORT_MODES:
                raise ValidationError(f"Unknown import mode {mode!r}")
            validate_json_import(data)
            result = ImportResult()
            imported_groups = [Group.from_dict(g) for g in data["hostsGroups"]]

            if mode == "replace":
                document.groups = []
                for source in imported_groups:
                    target = Group(name=validate_group_name(source.name))
                    if any(g.name == target.name for g in document.groups):
                        raise ValidationError(f"Duplicate group name {target.name!r} in import")
                    self._merge_hosts(target, source.hosts, result)
                    document.groups.append(target)
                document.active_groups = [g.id for g in document.groups]
                if isinstance(data.get("socketProxy"), dict):
                    document.proxy = validate_proxy_config(ForwardingProxyConfig.from_dict(data["socketProxy"]))
            elif mode == "new_group":
                name = validate_group_name(new_group_name or "")
                if any(g.name == name for g in document.groups):
                    raise ValidationError(f"Group name {name!r} already exists")
                target = Group(name=name)
                for source in imported_groups:
                    self._merge_hosts(target, source.hosts, result)
                document.groups.append(target)
                document.active_groups.append(target.id)
            else:
                for source in imported_groups:
                    name = validate_group_name(source.name)
                    target = next((g for g in document.groups if g.name == name), None)
                    if target is None:
                        target = Group(name=name)
                        document.groups.append(target)
                        document.active_groups.append(target.id)
                    self._merge_hosts(target, source.hosts, result)

            result.success = True
            result.message = f"Imported {result.imported} rule(s) in {mode} mode, skipped {result.skipped}"
            return result

        try:
            return self._mutate("import_json", change)
        except (ValidationError, NotFoundError) as e:
            logger.store_rejected("import_json", str(e))
            return ImportResult(success=False, message=str(e))

    @staticmethod
    def _merge_hosts(target: Group, hosts: List[HostEntry], result: ImportResult):
        for host in hosts:
            try:
                ip, domain = validate_host_rule(host.ip, host.domain)
            except ValidationError as e:
                result.skipped += 1
                result.invalid.append({"ip": host.ip, "domain": host.domain, "reason": str(e)})
                continue
            if target.has_pair(ip, domain):
                result.skipped += 1
                result.duplicates.append({"ip": ip, "domain": domain})
                continue
            target.hosts.append(HostEntry(id=new_id(), ip=ip, domain=domain, enabled=host.enabled))
            result.imported += 1
