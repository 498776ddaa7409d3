"""CLI client for SiteDeploy: site management, deploys, history and pull."""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import IO, Any
from urllib.parse import urlparse

try:
    import httpx
except ImportError:
    print("Error: httpx is required. Install with: pip install httpx")
    sys.exit(1)

from backend.services.archive_service import clear_tree, unpack_archive, validate_archive
from backend.services.diff_service import diff_snapshots
from backend.services.snapshot_service import fingerprint_directory, is_hidden
from cli.deployer import Deployer, DeploySummary, UploadReceipt
from cli.tracking import SnapshotStore

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
TRACKING_DIR = "tracking"
DEFAULT_SERVER_URL = "http://localhost:8080"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}
_CONFIG_KEYS = {"server": "server_url", "username": "username", "password": "password"}


class ServerError(Exception):
    """The server rejected a request."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"{detail} (HTTP {status_code})")
        self.status_code = status_code
        self.detail = detail


def default_config_dir() -> Path:
    """``$SITEDEPLOY_HOME`` if set, else ``~/.sitedeploy``."""
    override = os.environ.get("SITEDEPLOY_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".sitedeploy"


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def load_config(config_dir: Path) -> dict[str, Any]:
    """Load client config, filling in defaults for missing keys."""
    config: dict[str, Any] = {
        "server_url": DEFAULT_SERVER_URL,
        "username": "",
        "password": "",
        "site_paths": {},
    }
    config_path = config_dir / CONFIG_FILE
    if config_path.exists():
        stored = json.loads(config_path.read_text(encoding="utf-8"))
        if not isinstance(stored, dict):
            raise ValueError(f"Config file {config_path} must contain a JSON object")
        config.update(stored)
    return config


def save_config(config_dir: Path, config: dict[str, Any]) -> Path:
    """Save client config, readable only by the current user."""
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / CONFIG_FILE
    config_path.write_text(json.dumps(config, indent=2), encoding="utf-8")
    config_path.chmod(0o600)
    return config_path


def find_matching_sites(site_paths: dict[str, str], cwd: Path) -> list[str]:
    """Sites whose configured directory contains ``cwd``.

    When none does, fall back to sites whose directory lies below ``cwd``.
    """
    current = cwd.resolve()
    inside: list[str] = []
    below: list[str] = []
    for site, raw_path in sorted(site_paths.items()):
        site_path = Path(raw_path).expanduser().resolve()
        if current.is_relative_to(site_path):
            inside.append(site)
        elif site_path.is_relative_to(current):
            below.append(site)
    return inside or below


class DeployClient:
    """HTTP client for the SiteDeploy API. Also serves as the deploy transport."""

    def __init__(
        self,
        server_url: str,
        username: str = "",
        password: str = "",
        api_key: str = "",
        timeout: float = 120.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers: dict[str, str] = {}
        if username:
            headers["X-Username"] = username
            headers["X-Password"] = password
        if api_key:
            headers["X-API-Key"] = api_key
        self.server_url = server_url.rstrip("/")
        self.client = httpx.Client(
            base_url=self.server_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> DeployClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @staticmethod
    def _check(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        try:
            detail: Any = resp.json().get("detail", resp.text)
        except ValueError:
            detail = resp.text
        if isinstance(detail, list):
            detail = "; ".join(f"{e.get('field')}: {e.get('message')}" for e in detail)
        raise ServerError(resp.status_code, str(detail) or resp.reason_phrase)

    def _get(self, path: str, **params: Any) -> Any:
        resp = self.client.get(path, params=params or None)
        self._check(resp)
        return resp.json()

    def _post(self, path: str, body: dict[str, Any]) -> Any:
        resp = self.client.post(path, json=body)
        self._check(resp)
        return resp.json()

    # ── Sites ────────────────────────────────────────

    def health(self) -> dict[str, Any]:
        result: dict[str, Any] = self._get("/api/health")
        return result

    def list_sites(self) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = self._get("/api/sites")["sites"]
        return result

    def create_site(self, name: str, desc: str = "") -> dict[str, Any]:
        result: dict[str, Any] = self._post("/api/sites/create", {"name": name, "desc": desc})
        return result

    def update_site(self, name: str, desc: str) -> dict[str, Any]:
        result: dict[str, Any] = self._post("/api/sites/update", {"name": name, "desc": desc})
        return result

    def delete_site(self, name: str) -> dict[str, Any]:
        result: dict[str, Any] = self._post("/api/sites/delete", {"name": name})
        return result

    def authorize(self, site: str, usernames: list[str]) -> dict[str, Any]:
        result: dict[str, Any] = self._post(
            "/api/sites/authorize", {"site_name": site, "usernames": usernames}
        )
        return result

    def unauthorize(self, site: str, username: str) -> dict[str, Any]:
        result: dict[str, Any] = self._post(
            "/api/sites/unauthorize", {"site_name": site, "username": username}
        )
        return result

    # ── Deploys ──────────────────────────────────────

    def deploy_file(self, site: str, file_path: Path, message: str) -> dict[str, Any]:
        with open(file_path, "rb") as f:
            resp = self.client.post(
                "/api/sites/deploy",
                data={"name": site, "message": message},
                files={"file": (file_path.name, f)},
            )
        self._check(resp)
        result: dict[str, Any] = resp.json()
        return result

    @staticmethod
    def _receipt(data: dict[str, Any]) -> UploadReceipt:
        version = data.get("version") or {}
        return UploadReceipt(version=version.get("hash"), warnings=data.get("warnings", []))

    def upload_full(self, site: str, message: str, archive: IO[bytes]) -> UploadReceipt:
        resp = self.client.post(
            "/api/sites/deploy-full",
            data={"name": site, "message": message},
            files={"package": (f"{site}.tar.gz", archive, "application/gzip")},
        )
        self._check(resp)
        return self._receipt(resp.json())

    def upload_incremental(
        self, site: str, message: str, archive: IO[bytes], deleted: list[str]
    ) -> UploadReceipt:
        resp = self.client.post(
            "/api/sites/deploy-incremental",
            data={"name": site, "message": message, "deleted_files": json.dumps(deleted)},
            files={"package": (f"{site}.tar.gz", archive, "application/gzip")},
        )
        self._check(resp)
        return self._receipt(resp.json())

    # ── History ──────────────────────────────────────

    def versions(self, site: str, limit: int = 20) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = self._get("/api/sites/versions", name=site, limit=limit)
        return result

    def rollback(self, site: str, version: str, message: str = "") -> dict[str, Any]:
        result: dict[str, Any] = self._post(
            "/api/sites/rollback", {"name": site, "hash": version, "message": message}
        )
        return result

    def export(self, site: str, dest: IO[bytes]) -> int:
        """Stream the site's export archive into ``dest``. Returns bytes written."""
        written = 0
        with self.client.stream("GET", "/api/sites/export", params={"name": site}) as resp:
            if not resp.is_success:
                resp.read()
                self._check(resp)
            for chunk in resp.iter_bytes():
                dest.write(chunk)
                written += len(chunk)
        return written

    # ── Users ────────────────────────────────────────

    def list_users(self) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = self._get("/api/users/list")["users"]
        return result

    def create_user(self, name: str, password: str, is_admin: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = self._post(
            "/api/users/create", {"name": name, "password": password, "is_admin": is_admin}
        )
        return result

    def update_user(
        self, name: str, password: str | None = None, is_admin: bool | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"name": name}
        if password:
            body["password"] = password
        if is_admin is not None:
            body["is_admin"] = is_admin
        result: dict[str, Any] = self._post("/api/users/update", body)
        return result

    def delete_user(self, name: str) -> dict[str, Any]:
        result: dict[str, Any] = self._post("/api/users/delete", {"name": name})
        return result


def pull_site(client: DeployClient, store: SnapshotStore, site: str, dest: Path) -> int:
    """Replace the visible contents of ``dest`` with the server's copy of ``site``.

    Hidden entries in ``dest`` are kept.  The pulled tree becomes the new
    tracking baseline, so the next deploy is incremental.  Returns the number
    of files written.
    """
    dest.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryFile() as buf:
        client.export(site, buf)
        buf.seek(0)
        validate_archive(buf, dest)
        keep = frozenset(child.name for child in dest.iterdir() if is_hidden(child.name))
        clear_tree(dest, preserve=keep)
        stats = unpack_archive(buf, dest)
    store.save(site, fingerprint_directory(dest))
    return stats.files


def _confirm(prompt: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    return input(f"{prompt} [y/N]: ").strip().lower() == "y"


def _resolve_site_dir(
    config: dict[str, Any], site: str | None, directory: str | None
) -> tuple[str, Path]:
    """Pick the site and local directory from arguments, config, or the cwd."""
    site_paths: dict[str, str] = config.get("site_paths", {})
    if site is None:
        matches = find_matching_sites(site_paths, Path.cwd())
        if not matches:
            raise ValueError(
                "Cannot tell which site to use. Pass a site name or run "
                "'sitedeploy config set site <name> <dir>' first."
            )
        if len(matches) > 1:
            raise ValueError(f"Current directory matches several sites: {', '.join(matches)}")
        site = matches[0]
        print(f"Using site: {site}")
    if directory is None:
        configured = site_paths.get(site)
        if not configured:
            raise ValueError(
                f"No directory configured for site '{site}'. "
                f"Pass one or run 'sitedeploy config set site {site} <dir>'."
            )
        directory = configured
    return site, Path(directory).expanduser().resolve()


def _print_summary(summary: DeploySummary) -> None:
    if summary.mode == "noop":
        print(f"No changes to deploy for {summary.site}.")
        return
    for path in summary.added:
        print(f"  + {path}")
    for path in summary.modified:
        print(f"  ~ {path}")
    for path in summary.deleted:
        print(f"  - {path}")
    version = summary.version[:8] if summary.version else "not recorded"
    print(
        f"Deployed {summary.site} ({summary.mode}): {summary.changed} change(s), "
        f"{summary.archive_bytes} bytes, version {version}."
    )
    for warning in summary.warnings:
        print(f"  Warning: {warning}")


def _handle_config(args: argparse.Namespace, config_dir: Path) -> None:
    config = load_config(config_dir)
    if args.config_command == "get":
        print(f"Server:   {config['server_url']}")
        print(f"Username: {config['username'] or '(not set)'}")
        print(f"Password: {'******' if config['password'] else '(not set)'}")
        site_paths: dict[str, str] = config["site_paths"]
        if site_paths:
            print("Site directories:")
            for name, path in sorted(site_paths.items()):
                print(f"  {name:<20} -> {path}")
        else:
            print("Site directories: (none)")
        print(f"Config file: {config_dir / CONFIG_FILE}")
        return

    if args.config_command == "set":
        if args.key == "site":
            if len(args.values) != 2:
                raise ValueError("Usage: sitedeploy config set site <name> <directory>")
            name, directory = args.values
            path = Path(directory).expanduser().resolve()
            if not path.is_dir():
                print(f"Warning: directory does not exist yet: {path}")
            config["site_paths"][name] = str(path)
            print(f"Site '{name}' now deploys from {path}")
        else:
            if len(args.values) != 1:
                raise ValueError(f"Usage: sitedeploy config set {args.key} <value>")
            value = args.values[0]
            if args.key == "server":
                value = validate_server_url(value, args.allow_insecure_http)
            config[_CONFIG_KEYS[args.key]] = value
            print(f"Set {args.key}")
        save_config(config_dir, config)
        return

    if args.config_command == "remove":
        if config["site_paths"].pop(args.name, None) is None:
            raise ValueError(f"No directory configured for site '{args.name}'")
        save_config(config_dir, config)
        print(f"Removed directory for site '{args.name}'")


def _make_client(args: argparse.Namespace, config: dict[str, Any]) -> DeployClient:
    server_url = validate_server_url(
        args.server or config["server_url"], args.allow_insecure_http
    )
    username = args.username or config.get("username", "")
    password = os.environ.get("SITEDEPLOY_PASSWORD") or config.get("password", "")
    if username and not password:
        password = getpass.getpass("Password: ")
    api_key = os.environ.get("SITEDEPLOY_API_KEY", "")
    return DeployClient(server_url, username, password, api_key)


def _run_command(
    args: argparse.Namespace, client: DeployClient, store: SnapshotStore, config: dict[str, Any]
) -> None:
    command = args.command
    if command == "list":
        sites = client.list_sites()
        if not sites:
            print("No sites.")
        for site in sites:
            print(f"{site['name']:<20} {site['url']:<40} {site['desc']}")
    elif command == "create":
        site = client.create_site(args.name, args.desc)
        print(f"Created site {site['name']}: {site['url']}")
    elif command == "update":
        site = client.update_site(args.name, args.desc)
        print(f"Updated site {site['name']}")
    elif command == "delete":
        if not _confirm(f"Delete site '{args.name}' and all its history?", args.yes):
            print("Cancelled.")
            return
        print(client.delete_site(args.name)["message"])
        store.delete(args.name)
    elif command in ("deploy", "deploy-full", "deploy-inc"):
        site_name, root = _resolve_site_dir(config, args.site, args.dir)
        mode = {"deploy": "auto", "deploy-full": "full", "deploy-inc": "incremental"}[command]
        summary = Deployer(store, client).deploy(site_name, root, args.message, mode=mode)
        _print_summary(summary)
    elif command == "deploy-file":
        result = client.deploy_file(args.site, Path(args.file), args.message)
        print(f"{result['message']} ({result['files_written']} file)")
        store.delete(args.site)
    elif command == "status":
        site_name, root = _resolve_site_dir(config, args.site, args.dir)
        delta = diff_snapshots(fingerprint_directory(root), store.load(site_name))
        if delta.is_empty:
            print("Up to date.")
        for path in delta.added:
            print(f"  + {path}")
        for path in delta.modified:
            print(f"  ~ {path}")
        for path in delta.deleted:
            print(f"  - {path}")
    elif command == "versions":
        for v in client.versions(args.site, args.limit):
            print(f"{v['short_hash']}  {v['date']}  {v['author']:<12} {v['message']}")
    elif command == "rollback":
        result = client.rollback(args.site, args.hash, args.message)
        print(f"{result['message']} (new version {result['version']['short_hash']})")
        store.delete(args.site)
    elif command == "pull":
        site_name, dest = _resolve_site_dir(config, args.site, args.dir)
        if not _confirm(f"Overwrite {dest} with the server copy of '{site_name}'?", args.yes):
            print("Cancelled.")
            return
        count = pull_site(client, store, site_name, dest)
        print(f"Pulled {count} file(s) into {dest}")
    elif command == "authorize":
        result = client.authorize(args.site, args.users)
        print(f"Authorized users on {args.site}: {', '.join(result['site']['users'])}")
        for name in result.get("skipped", []):
            print(f"  Skipped unknown user: {name}")
    elif command == "unauthorize":
        client.unauthorize(args.site, args.user)
        print(f"Removed {args.user} from {args.site}")
    elif command == "users":
        _run_users_command(args, client)


def _run_users_command(args: argparse.Namespace, client: DeployClient) -> None:
    if args.users_command == "list":
        for user in client.list_users():
            print(f"{user['name']:<20} {'admin' if user['is_admin'] else ''}")
    elif args.users_command == "create":
        password = args.user_password or getpass.getpass("New user password: ")
        client.create_user(args.name, password, args.admin)
        print(f"Created user {args.name}")
    elif args.users_command == "update":
        client.update_user(args.name, args.user_password, args.admin)
        print(f"Updated user {args.name}")
    elif args.users_command == "delete":
        client.delete_user(args.name)
        print(f"Deleted user {args.name}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sitedeploy",
        description="Deploy static sites to a SiteDeploy server",
    )
    parser.add_argument("--config-dir", help="Config directory (default: ~/.sitedeploy)")
    parser.add_argument("--server", "-s", help="Server URL (overrides config)")
    parser.add_argument("--username", "-u", help="Username (overrides config)")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")

    config_parser = subparsers.add_parser("config", help="Manage client configuration")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    set_parser = config_sub.add_parser("set", help="Set server, username, password or site")
    set_parser.add_argument("key", choices=["server", "username", "password", "site"])
    set_parser.add_argument("values", nargs="+")
    config_sub.add_parser("get", help="Show current configuration")
    remove_parser = config_sub.add_parser("remove", help="Remove a site directory")
    remove_parser.add_argument("what", choices=["site"])
    remove_parser.add_argument("name")

    subparsers.add_parser("list", help="List sites you can deploy to")

    create_parser = subparsers.add_parser("create", help="Create a site")
    create_parser.add_argument("name")
    create_parser.add_argument("--desc", default="", help="Site description")

    update_parser = subparsers.add_parser("update", help="Change a site's description")
    update_parser.add_argument("name")
    update_parser.add_argument("--desc", required=True)

    delete_parser = subparsers.add_parser("delete", help="Delete a site and its history")
    delete_parser.add_argument("name")
    delete_parser.add_argument("--yes", "-y", action="store_true")

    for name, help_text, default_message in (
        ("deploy", "Deploy changes (full on first deploy)", "Deploy"),
        ("deploy-full", "Upload the whole tree", "Full deploy"),
        ("deploy-inc", "Upload only changed files", "Incremental deploy"),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("site", nargs="?")
        p.add_argument("dir", nargs="?")
        p.add_argument("--message", "-m", default=default_message)

    file_parser = subparsers.add_parser("deploy-file", help="Replace a site with one file")
    file_parser.add_argument("site")
    file_parser.add_argument("file")
    file_parser.add_argument("--message", "-m", default="Deploy single file")

    status_parser = subparsers.add_parser("status", help="Show what the next deploy would send")
    status_parser.add_argument("site", nargs="?")
    status_parser.add_argument("dir", nargs="?")

    versions_parser = subparsers.add_parser("versions", help="Show deployment history")
    versions_parser.add_argument("site")
    versions_parser.add_argument("--limit", "-n", type=int, default=20)

    rollback_parser = subparsers.add_parser("rollback", help="Restore an earlier version")
    rollback_parser.add_argument("site")
    rollback_parser.add_argument("hash")
    rollback_parser.add_argument("--message", "-m", default="")

    pull_parser = subparsers.add_parser("pull", help="Download a site into a local directory")
    pull_parser.add_argument("site", nargs="?")
    pull_parser.add_argument("dir", nargs="?")
    pull_parser.add_argument("--yes", "-y", action="store_true")

    auth_parser = subparsers.add_parser("authorize", help="Grant users deploy access")
    auth_parser.add_argument("site")
    auth_parser.add_argument("users", nargs="+")

    unauth_parser = subparsers.add_parser("unauthorize", help="Revoke a user's deploy access")
    unauth_parser.add_argument("site")
    unauth_parser.add_argument("user")

    users_parser = subparsers.add_parser("users", help="Manage users (admin only)")
    users_sub = users_parser.add_subparsers(dest="users_command", required=True)
    users_sub.add_parser("list")
    user_create = users_sub.add_parser("create")
    user_create.add_argument("name")
    user_create.add_argument("--password", dest="user_password")
    user_create.add_argument("--admin", action="store_true")
    user_update = users_sub.add_parser("update")
    user_update.add_argument("name")
    user_update.add_argument("--password", dest="user_password")
    user_update.add_argument("--admin", action=argparse.BooleanOptionalAction, default=None)
    user_delete = users_sub.add_parser("delete")
    user_delete.add_argument("name")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    config_dir = Path(args.config_dir).expanduser() if args.config_dir else default_config_dir()
    try:
        if args.command == "config":
            _handle_config(args, config_dir)
            return
        config = load_config(config_dir)
        store = SnapshotStore(config_dir / TRACKING_DIR)
        with _make_client(args, config) as client:
            _run_command(args, client, store, config)
    except ServerError as exc:
        print(f"Error: {exc.detail} (HTTP {exc.status_code})")
        sys.exit(1)
    except httpx.HTTPError as exc:
        print(f"Error: request failed: {exc}")
        sys.exit(1)
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
