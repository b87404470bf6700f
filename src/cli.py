# src/cli.py
from __future__ import annotations
import argparse
import io
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import qrcode

from core.errors import VpnError
from core.log import setup_logging
from core.models import OPENVPN, WIREGUARD
from core.settings import Settings
from core.state import atomic_write_bytes
from ovpn_backend import init_server as ovpn_init
from ovpn_backend.openvpn import OpenVpnManager
from wg_backend import init_server as wg_init
from wg_backend.wireguard import WireGuardManager


logger = logging.getLogger("vpn")

MANAGERS = {
    WIREGUARD: WireGuardManager,
    OPENVPN: OpenVpnManager,
}


class _Parser(argparse.ArgumentParser):
    """Erreurs d'usage : préfixe [ERROR] et code de sortie 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"[ERROR] {message}\n")


def _manager(args, settings: Settings):
    return MANAGERS[args.protocol](settings)


def _csv(value: str):
    return [v.strip() for v in value.split(",") if v.strip()]


def _human_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TiB"


def _ago(when: datetime) -> str:
    seconds = int((datetime.now(timezone.utc) - when).total_seconds())
    if seconds < 60:
        return f"{max(seconds, 0)}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


# ---------------------------------------------------
# Commande : init (initialisation du serveur)
# ---------------------------------------------------

def cmd_init(args, settings):
    if args.protocol == WIREGUARD:
        state = wg_init.init_server(
            settings,
            endpoint=args.endpoint,
            listen_port=args.port,
            network_cidr=args.network,
            interface=args.interface,
            dns=args.dns,
            max_clients=args.max_clients,
        )
    else:
        state = ovpn_init.init_server(
            settings,
            endpoint=args.endpoint,
            listen_port=args.port,
            network_cidr=args.network,
            proto=args.proto,
            dns=args.dns,
            max_clients=args.max_clients if args.max_clients is not None else ovpn_init.DEFAULT_MAX_CLIENTS,
            key_size=args.key_size,
            cert_days=args.cert_days,
        )

    s = state.server
    print(f"[+] {args.protocol} server initialized.")
    print(f"[+] Address  : {s.server_address}/{s.network.prefixlen}")
    print(f"[+] Endpoint : {s.endpoint}:{s.listen_port}")
    print(f"[+] Registry : {settings.state_path(args.protocol)}")
    return 0


# ---------------------------------------------------
# Commande : add
# ---------------------------------------------------

def cmd_add(args, settings):
    change = _manager(args, settings).add(args.name)
    print(f"[+] Client '{change.record.name}' created ({change.record.address})")
    print(f"[+] Configuration file: {change.artifact}")
    return 0


# ---------------------------------------------------
# Commande : remove
# ---------------------------------------------------

def cmd_remove(args, settings):
    change = _manager(args, settings).remove(args.name)
    if args.protocol == OPENVPN:
        print(f"[OK] Client '{args.name}' revoked (serial {change.record.serial})")
    else:
        print(f"[OK] Client '{args.name}' removed")
    return 0


# ---------------------------------------------------
# Commande : list
# ---------------------------------------------------

def cmd_list(args, settings):
    manager = _manager(args, settings)
    state = manager.registry.load()
    s = state.server

    print("=== Server ===")
    print(f"Endpoint : {s.endpoint}:{s.listen_port}")
    print(f"Network  : {s.network_cidr}")
    if s.max_clients:
        print(f"Clients  : {len(state.active())}/{s.max_clients}")
    print()

    print("=== Clients ===")
    if not state.peers:
        print("No clients.")
        return 0

    for p in state.peers:
        if p.active:
            print(f"- {p.name} ({p.address}) created {p.issued_at}")
        else:
            print(f"- {p.name} ({p.address}) revoked {p.revoked_at}")
    return 0


# ---------------------------------------------------
# Commande : connected
# ---------------------------------------------------

def cmd_connected(args, settings):
    peers = _manager(args, settings).connected()
    if not peers:
        print("No connected clients.")
        return 0

    for p in peers:
        name = p.name or "(unknown)"
        seen = _ago(p.last_seen) if p.last_seen else "-"
        print(f"{name:<20} {p.address or '-':<16} {p.endpoint or '-':<24} {seen:<10} "
              f"rx {_human_bytes(p.received)}  tx {_human_bytes(p.sent)}")
    return 0


# ---------------------------------------------------
# Commande : export
# ---------------------------------------------------

def cmd_export(args, settings):
    manager = _manager(args, settings)
    path = manager.export(args.name)
    print(f"[OK] Config generated: {path}")
    if args.show:
        print()
        print(path.read_text(encoding="utf-8"), end="")
    return 0


# ---------------------------------------------------
# Commande : sync
# ---------------------------------------------------

def cmd_sync(args, settings):
    restarted = _manager(args, settings).sync()
    print("[OK] Server configuration applied" + (" (service restarted)" if restarted else ""))
    return 0


# ---------------------------------------------------
# Commande : qr (WireGuard)
# ---------------------------------------------------

def cmd_qr(args, settings):
    manager = _manager(args, settings)
    record = manager.get(args.name)
    conf = manager.render(record, manager.server())

    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_Q, border=2)
    qr.add_data(conf)
    qr.make(fit=True)

    if args.output:
        path = Path(args.output)
        # le PNG contient la clé privée du client
        buf = io.BytesIO()
        qr.make_image().save(buf)
        atomic_write_bytes(path, buf.getvalue(), mode=0o600)
        print(f"[OK] QR code generated: {path}")
    else:
        qr.print_ascii(out=sys.stdout, invert=True)
    return 0


def cmd_help(args, settings):
    args.help_parser.print_help()
    return 0


# ---------------------------------------------------
# CLI / Parser
# ---------------------------------------------------

def _add_protocol(sub, protocol: str, aliases, help_text: str):
    p = sub.add_parser(protocol, aliases=aliases, help=help_text)
    p.set_defaults(protocol=protocol, help_parser=p)
    cmds = p.add_subparsers(dest="cmd", metavar="COMMAND")

    # init
    p_init = cmds.add_parser("init", help="initialize the server and the registry")
    p_init.add_argument("--endpoint", help="public IP or hostname of the server")
    p_init.add_argument("--port", type=int, help="listen port")
    p_init.add_argument("--network", help="client subnet (CIDR)")
    p_init.add_argument("--dns", type=_csv, help="comma separated DNS servers")
    p_init.add_argument("--max-clients", type=int, help="maximum number of active clients")
    if protocol == WIREGUARD:
        p_init.add_argument("--interface", default="wg0")
    else:
        p_init.add_argument("--proto", default="udp", choices=["udp", "tcp"])
        p_init.add_argument("--key-size", type=int, default=2048)
        p_init.add_argument("--cert-days", type=int, default=3650)
    p_init.set_defaults(func=cmd_init)

    # add
    p_add = cmds.add_parser("add", help="create a client")
    p_add.add_argument("name")
    p_add.set_defaults(func=cmd_add)

    # remove
    p_rm = cmds.add_parser("remove", aliases=["delete", "revoke"], help="remove or revoke a client")
    p_rm.add_argument("name")
    p_rm.set_defaults(func=cmd_remove)

    # list
    p_list = cmds.add_parser("list", aliases=["ls"], help="list clients")
    p_list.set_defaults(func=cmd_list)

    # connected
    p_conn = cmds.add_parser("connected", aliases=["status"], help="show connected clients")
    p_conn.set_defaults(func=cmd_connected)

    # export
    p_export = cmds.add_parser("export", help="write the client configuration file again")
    p_export.add_argument("name")
    p_export.add_argument("--show", action="store_true", help="also print the configuration")
    p_export.set_defaults(func=cmd_export)

    # sync
    p_sync = cmds.add_parser("sync", help="apply the registry to the running server")
    p_sync.set_defaults(func=cmd_sync)

    # qr
    if protocol == WIREGUARD:
        p_qr = cmds.add_parser("qr", help="show the client configuration as a QR code")
        p_qr.add_argument("name")
        p_qr.add_argument("--output", "-o", help="write a PNG file instead of printing")
        p_qr.set_defaults(func=cmd_qr)

    # help
    p_help = cmds.add_parser("help", help="show this help")
    p_help.set_defaults(func=cmd_help)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="vpn", description="Manage WireGuard and OpenVPN clients")
    parser.add_argument("--state-dir", type=Path, help="registry directory")
    parser.add_argument("--clients-dir", type=Path, help="client configuration directory")
    parser.add_argument("--wireguard-dir", type=Path)
    parser.add_argument("--openvpn-dir", type=Path)
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--no-apply", action="store_true",
                        help="update files only, do not touch the running server")
    parser.set_defaults(help_parser=parser)

    sub = parser.add_subparsers(dest="protocol_cmd", metavar="PROTOCOL")
    _add_protocol(sub, WIREGUARD, ["wg"], "WireGuard clients")
    _add_protocol(sub, OPENVPN, ["ovpn"], "OpenVPN clients")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env(
            state_dir=args.state_dir,
            clients_dir=args.clients_dir,
            wireguard_dir=args.wireguard_dir,
            openvpn_dir=args.openvpn_dir,
        )
        if args.no_apply:
            settings = settings.with_overrides(apply=False)
        setup_logging("DEBUG" if args.verbose else settings.log_level)
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1

    if not hasattr(args, "func"):
        args.help_parser.print_help()
        return 1

    try:
        return args.func(args, settings)
    except VpnError as e:
        logger.error("%s", e)
        return 1
    except ValueError as e:
        logger.error("Invalid value: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
