#!/usr/bin/env python3
"""
Command line UI for the hosts router

Edits the rule store directly and asks the running supervisor to apply the
result over its control endpoint.
"""

import argparse
import json
import os
import sys
from urllib.parse import urlsplit

from database import StoreDatabase
from exceptions import NotFoundError
from mapping import compile_effective_mapping
from messenger import Messenger
from models import ForwardingProxyConfig, Group, HostEntry, ProxyAuth, ProxyProtocol
from notifier import ChangeNotifier
from policy import compile_policy
from rule_store import IMPORT_MODES, RuleStore
from transfer import export_hosts_text, export_json
from ui_session import UiSession
from validation import normalize_bypass_rules


def build_session() -> UiSession:
    store_file = os.getenv('STORE_FILE', os.path.expanduser('~/.hosts-router/store.json'))
    os.makedirs(os.path.dirname(os.path.abspath(store_file)), exist_ok=True)
    database = StoreDatabase(store_file)
    notifier = ChangeNotifier()
    store = RuleStore(database, notifier)
    messenger = Messenger(wake=database.touch)
    return UiSession(store, messenger, notifier)


def _print_result(result) -> int:
    print(result.message)
    return 0 if result.success else 1


def _print_import(result) -> int:
    print(result.message)
    for entry in result.invalid:
        location = f"line {entry['line']}: " if "line" in entry else ""
        print(f"  invalid {location}{entry.get('reason')}")
    return 0 if result.success else 1


def cmd_list(session: UiSession, args) -> int:
    document = session.refresh()
    if not document.groups:
        print("No groups")
        return 0
    for group in document.groups:
        marker = "*" if group.id in document.active_groups else " "
        print(f"[{marker}] {group.name} ({group.id}) - {len(group.hosts)} host(s)")
        for host in group.hosts:
            state = "on " if host.enabled else "off"
            print(f"      {state} {host.ip:<15} {host.domain}  ({host.id})")
    return 0


def cmd_group(session: UiSession, args) -> int:
    store = session.store
    if args.group_command == "add":
        group = Group(name=args.name)
        result = session.run(f"add group {args.name}", lambda: store.add_group(group, make_active=not args.inactive))
        if result.success:
            print(f"Group id: {group.id}")
        return _print_result(result)
    if args.group_command == "rename":
        return _print_result(session.run(f"rename group {args.group_id}",
                                         lambda: store.rename_group(args.group_id, args.name)))
    if args.group_command == "delete":
        return _print_result(session.run(f"delete group {args.group_id}",
                                         lambda: store.delete_group(args.group_id)))
    return _print_result(session.toggle_group(args.group_id, args.group_command == "enable"))


def cmd_host(session: UiSession, args) -> int:
    store = session.store
    if args.host_command == "add":
        host = HostEntry(ip=args.ip, domain=args.domain, enabled=not args.disabled)
        result = session.run(f"add host {args.domain}", lambda: store.add_host(args.group_id, host))
        if result.success:
            print(f"Host id: {host.id}")
        return _print_result(result)
    if args.host_command == "update":
        partial = {k: v for k, v in (("ip", args.ip), ("domain", args.domain)) if v is not None}
        return _print_result(session.run(f"update host {args.host_id}",
                                         lambda: store.update_host(args.group_id, args.host_id, partial) is not None))
    if args.host_command == "delete":
        return _print_result(session.run(f"delete host {args.host_id}",
                                         lambda: store.delete_host(args.group_id, args.host_id)))
    return _print_result(session.toggle_host(args.group_id, args.host_id, args.host_command == "enable"))


def cmd_proxy(session: UiSession, args) -> int:
    current = session.refresh().proxy
    if args.proxy_command == "show":
        shown = current.to_dict()
        if shown["auth"]["password"]:
            shown["auth"]["password"] = "********"
        print(json.dumps(shown, indent=2))
        return 0

    if args.proxy_command == "disable":
        config = ForwardingProxyConfig.from_dict(current.to_dict())
        config.enabled = False
        return _print_result(session.save_proxy(config))

    bypass, invalid = normalize_bypass_rules(args.bypass or [])
    if invalid:
        print(f"Invalid bypass rule(s): {', '.join(invalid)}")
        return 1
    config = ForwardingProxyConfig(
        host=args.host,
        port=args.port,
        enabled=True,
        protocol=ProxyProtocol(args.protocol),
        auth=ProxyAuth(enabled=bool(args.username), username=args.username or "", password=args.password or ""),
        bypass_list=bypass
    )
    return _print_result(session.save_proxy(config))


def cmd_import(session: UiSession, args) -> int:
    with open(args.file, 'r') as f:
        content = f.read()

    store = session.store
    if args.import_command == "hosts":
        result = store.import_hosts(args.group_id, content, skip_duplicates=not args.overwrite)
    else:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            print(f"Invalid JSON: {e}")
            return 1
        result = store.import_json(data, mode=args.mode, new_group_name=args.group_name)

    code = _print_import(result)
    if result.success and result.imported:
        code = _print_result(session.run("apply imported rules", lambda: True)) or code
    return code


def cmd_export(session: UiSession, args) -> int:
    document = session.refresh()
    try:
        if args.export_command == "hosts":
            output = export_hosts_text(document.groups, group_id=args.group_id,
                                       include_disabled=args.include_disabled,
                                       include_comments=not args.no_comments)
        else:
            output = json.dumps(export_json(document, group_id=args.group_id), indent=2) + "\n"
    except NotFoundError as e:
        print(str(e))
        return 1

    if args.output:
        with open(args.output, 'w') as f:
            f.write(output)
    else:
        sys.stdout.write(output)
    return 0


def cmd_apply(session: UiSession, args) -> int:
    return _print_result(session.run("apply routing policy", lambda: True))


def cmd_evaluate(session: UiSession, args) -> int:
    document = session.refresh()
    mapping = compile_effective_mapping(document.groups, document.active_groups)
    policy = compile_policy(mapping, document.proxy)
    if args.pac:
        sys.stdout.write(policy.script)
        return 0
    if not args.url:
        print("A URL is required unless --pac is given")
        return 2

    url = args.url if "://" in args.url else f"http://{args.url}"
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    print(policy.find_proxy_for_url(url, host))
    return 0


def cmd_serve(session, args) -> int:
    from app import main as serve_main
    serve_main()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hosts-router",
        description="Per-domain host overrides delivered through a PAC routing policy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve                                  # Run the supervisor
  %(prog)s group add Staging                      # Create and activate a group
  %(prog)s host add <group-id> 10.0.0.1 example.com
  %(prog)s proxy set --host 127.0.0.1 --port 1080 --protocol SOCKS5 --bypass '*.corp'
  %(prog)s evaluate https://www.example.com/      # Show the routing decision
        """
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("serve", help="Run the supervisor").set_defaults(handler=cmd_serve)
    commands.add_parser("list", help="List groups and hosts").set_defaults(handler=cmd_list)
    commands.add_parser("apply", help="Ask the supervisor to apply the current rules").set_defaults(handler=cmd_apply)

    group = commands.add_parser("group", help="Manage groups")
    group.set_defaults(handler=cmd_group)
    group_commands = group.add_subparsers(dest="group_command", required=True)
    add = group_commands.add_parser("add")
    add.add_argument("name")
    add.add_argument("--inactive", action="store_true", help="Do not activate the new group")
    rename = group_commands.add_parser("rename")
    rename.add_argument("group_id")
    rename.add_argument("name")
    for name in ("delete", "enable", "disable"):
        group_commands.add_parser(name).add_argument("group_id")

    host = commands.add_parser("host", help="Manage host entries")
    host.set_defaults(handler=cmd_host)
    host_commands = host.add_subparsers(dest="host_command", required=True)
    add = host_commands.add_parser("add")
    add.add_argument("group_id")
    add.add_argument("ip")
    add.add_argument("domain")
    add.add_argument("--disabled", action="store_true")
    update = host_commands.add_parser("update")
    update.add_argument("group_id")
    update.add_argument("host_id")
    update.add_argument("--ip")
    update.add_argument("--domain")
    for name in ("delete", "enable", "disable"):
        sub = host_commands.add_parser(name)
        sub.add_argument("group_id")
        sub.add_argument("host_id")

    proxy = commands.add_parser("proxy", help="Forwarding proxy settings")
    proxy.set_defaults(handler=cmd_proxy)
    proxy_commands = proxy.add_subparsers(dest="proxy_command", required=True)
    proxy_commands.add_parser("show")
    proxy_commands.add_parser("disable")
    proxy_set = proxy_commands.add_parser("set")
    proxy_set.add_argument("--host", required=True)
    proxy_set.add_argument("--port", type=int, required=True)
    proxy_set.add_argument("--protocol", choices=[p.value for p in ProxyProtocol], default="SOCKS5")
    proxy_set.add_argument("--bypass", action="append", help="Domain or *.suffix sent DIRECT (repeatable)")
    proxy_set.add_argument("--username")
    proxy_set.add_argument("--password")

    imp = commands.add_parser("import", help="Import rules")
    imp.set_defaults(handler=cmd_import)
    import_commands = imp.add_subparsers(dest="import_command", required=True)
    hosts = import_commands.add_parser("hosts", help="Import a hosts file into a group")
    hosts.add_argument("group_id")
    hosts.add_argument("file")
    hosts.add_argument("--overwrite", action="store_true", help="Re-enable duplicates instead of skipping them")
    js = import_commands.add_parser("json", help="Import a JSON export")
    js.add_argument("file")
    js.add_argument("--mode", choices=IMPORT_MODES, default="merge")
    js.add_argument("--group-name", help="Target group name for --mode new_group")

    exp = commands.add_parser("export", help="Export rules")
    exp.set_defaults(handler=cmd_export)
    export_commands = exp.add_subparsers(dest="export_command", required=True)
    for name in ("hosts", "json"):
        sub = export_commands.add_parser(name)
        sub.add_argument("--group-id")
        sub.add_argument("--output", "-o")
        if name == "hosts":
            sub.add_argument("--include-disabled", action="store_true")
            sub.add_argument("--no-comments", action="store_true")

    evaluate = commands.add_parser("evaluate", help="Evaluate the current policy locally")
    evaluate.set_defaults(handler=cmd_evaluate)
    evaluate.add_argument("url", nargs="?", default="")
    evaluate.add_argument("--pac", action="store_true", help="Print the generated PAC script instead")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        return args.handler(None, args)

    session = build_session()
    try:
        return args.handler(session, args)
    finally:
        session.close()
        session.messenger.close()


if __name__ == "__main__":
    sys.exit(main())
