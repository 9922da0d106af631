#!/usr/bin/env python3
"""Provision a VM for a Node.js frontend and backend behind nginx.

Installs MongoDB as a systemd service, checks out the frontend and backend
repositories, builds and starts both under PM2, provisions a TLS certificate
(self-signed or Let's Encrypt) and configures nginx as the reverse proxy.

Every step is idempotent, so a failed run can be repeated or resumed.

Usage: uv run provision-vm <command> [options]

Examples:
    uv run provision-vm run --config site.env
    uv run provision-vm run --config site.env --host 203.0.113.10
    uv run provision-vm run --config site.env --start-at certificate
    uv run provision-vm check-package nginx-light
"""

import base64
import getpass
import json
import os
import posixpath
import re
import shlex
import subprocess
import sys
import time
from dataclasses import MISSING, dataclass, fields
from enum import IntEnum
from pathlib import Path
from textwrap import dedent, indent
from typing import Callable, Literal, Protocol
from urllib.parse import quote

import cyclopts
import dns.resolver
from dotenv import dotenv_values
from fabric import Connection
from rich import print

app = cyclopts.App(
    name="provision-vm",
    help="Provision a VM for a Node.js frontend and backend behind nginx",
    sort_key=None,
)

CertMethod = Literal["selfsigned", "acme"]

BUILD_MAX_RUNS = 10
SERVICE_STARTUP_DELAY = 5
PROCESS_STARTUP_DELAY = 3

BASE_PACKAGES = ["git", "curl", "lsb-release", "npm", "openssl", "nginx-light"]
NPM_PACKAGES = ["pm2"]

MONGODB_KEYSERVER = "hkp://keyserver.ubuntu.com:80"
MONGODB_SIGNING_KEYS = {
    "xenial": "E52529D4",
    "bionic": "4B7C549A058F8B6B",
}
MONGODB_SERVICE = "mongod"
MONGODB_UNIT_PATH = "/lib/systemd/system/mongod.service"

NGINX_SITES_AVAILABLE = "/etc/nginx/sites-available"
NGINX_SITES_ENABLED = "/etc/nginx/sites-enabled"
LETSENCRYPT_LIVE_DIR = "/etc/letsencrypt/live"


def log(msg: str):
    print(f"[green][INFO][/green] {msg}")


def warn(msg: str):
    print(f"[yellow][WARN][/yellow] {msg}")


def error(msg: str):
    print(f"[red][ERROR][/red] {msg}")
    sys.exit(1)


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Host(Protocol):
    """The machine being provisioned.

    Steps talk to the host only through these capabilities, so they can run
    against the local machine, a server over SSH, or a fake in tests.
    ``failures`` collects the descriptions of actions that failed on it.
    ``ip`` is the address the host is reached at, None for this machine.
    """

    failures: list[str]
    ip: str | None

    def run(
        self, cmd: str, *, sudo: bool = False, cwd: str | None = None
    ) -> CommandResult: ...

    def package_installed(self, package: str) -> bool: ...

    def install_package(self, package: str) -> CommandResult: ...

    def purge_package(self, package: str) -> CommandResult: ...

    def npm_package_installed(self, package: str) -> bool: ...

    def install_npm_package(self, package: str) -> CommandResult: ...

    def write_file(self, path: str, content: str) -> CommandResult: ...

    def read_file(self, path: str) -> str | None:
        """:return: file content, or None if the file cannot be read"""
        ...

    def exists(self, path: str) -> bool: ...

    def remove(self, path: str) -> CommandResult: ...

    def service(self, name: str, action: str) -> CommandResult:
        """:param action: systemctl verb (start, stop, enable, is-active, ...)"""
        ...

    def os_codename(self) -> str: ...


class ShellHost:
    """Implements the host capabilities as shell commands run through ``_exec``."""

    user = "root"
    ip: str | None = None

    def __init__(self):
        self.failures: list[str] = []

    def _exec(self, cmd: str) -> CommandResult:
        raise NotImplementedError

    def run(
        self, cmd: str, *, sudo: bool = False, cwd: str | None = None
    ) -> CommandResult:
        if cwd:
            cmd = f"cd {shlex.quote(cwd)} && {cmd}"
        if sudo and self.user != "root":
            cmd = f"sudo bash -c {shlex.quote(cmd)}"
        return self._exec(cmd)

    def package_installed(self, package: str) -> bool:
        # dpkg --status also succeeds for removed packages with leftover config
        return self.run(
            f"dpkg-query -W -f='${{Status}}' {shlex.quote(package)} 2>/dev/null"
            " | grep -q 'install ok installed'"
        ).ok

    def install_package(self, package: str) -> CommandResult:
        return self.run(
            f"DEBIAN_FRONTEND=noninteractive apt-get -y install {shlex.quote(package)}",
            sudo=True,
        )

    def purge_package(self, package: str) -> CommandResult:
        return self.run(f"apt-get -y purge {shlex.quote(package)}", sudo=True)

    def npm_package_installed(self, package: str) -> bool:
        return self.run(f"npm list -g {shlex.quote(package)}").ok

    def install_npm_package(self, package: str) -> CommandResult:
        return self.run(f"npm install -g {shlex.quote(package)}", sudo=True)

    def write_file(self, path: str, content: str) -> CommandResult:
        """Uses base64 encoding to avoid heredoc and escaping issues."""
        encoded = base64.b64encode(content.encode()).decode()
        return self.run(
            f"echo '{encoded}' | base64 -d > {shlex.quote(path)}", sudo=True
        )

    def read_file(self, path: str) -> str | None:
        result = self.run(f"cat {shlex.quote(path)}", sudo=True)
        return result.stdout if result.ok else None

    def exists(self, path: str) -> bool:
        return self.run(f"test -e {shlex.quote(path)}", sudo=True).ok

    def remove(self, path: str) -> CommandResult:
        return self.run(f"rm -rf {shlex.quote(path)}", sudo=True)

    def service(self, name: str, action: str) -> CommandResult:
        return self.run(f"systemctl {action} {shlex.quote(name)}", sudo=True)

    def os_codename(self) -> str:
        return self.run("lsb_release -sc").stdout.strip()


class LocalHost(ShellHost):
    def __init__(self):
        super().__init__()
        # getpass reads $USER, which can disagree with the effective uid
        self.user = "root" if os.geteuid() == 0 else getpass.getuser()

    def _exec(self, cmd: str) -> CommandResult:
        result = subprocess.run(["bash", "-c", cmd], capture_output=True, text=True)
        return CommandResult(result.returncode, result.stdout, result.stderr)


class RemoteHost(ShellHost):
    def __init__(self, ip: str, user: str = "root"):
        super().__init__()
        self.ip = ip
        self.user = user

    def _exec(self, cmd: str) -> CommandResult:
        with Connection(
            self.ip, user=self.user, connect_kwargs={"look_for_keys": True}
        ) as c:
            result = c.run(f"bash -c {shlex.quote(cmd)}", hide=True, warn=True)
            return CommandResult(result.return_code, result.stdout, result.stderr)


def get_host(target: str | None, ssh_user: str = "root") -> Host:
    """:param target: IP or hostname to reach over SSH, None or "localhost" for this machine"""
    if target in (None, "", "localhost"):
        return LocalHost()
    return RemoteHost(target, user=ssh_user)


def action_result(host: Host, description: str, result: CommandResult) -> bool:
    """Logs the outcome of one action and records it on the host if it failed."""
    if result.ok:
        log(f"{description}: done")
        return True
    detail = (result.stderr or result.stdout).strip()
    warn(f"{description}: failed (exit {result.returncode})" + (f": {detail}" if detail else ""))
    host.failures.append(description)
    return False


def action(
    host: Host, description: str, cmd: str, *, sudo: bool = True, cwd: str | None = None
) -> CommandResult:
    result = host.run(cmd, sudo=sudo, cwd=cwd)
    action_result(host, description, result)
    return result


def repo_name(uri: str) -> str:
    """``https://github.com/org/shop.git`` -> ``shop``"""
    name = uri.rstrip("/").rsplit("/", 1)[-1]
    return name[: -len(".git")] if name.endswith(".git") else name


@dataclass(frozen=True)
class Config:
    """Everything a provisioning run needs, built once and passed to each step.

    Field names match the config file keys in lower case (``DOMAIN`` ->
    ``domain``). Fields without a default are required.
    """

    domain: str
    backend_repo: str
    frontend_repo: str
    db_password: str
    google_client_id: str
    google_client_secret: str
    aws_access_key_id: str
    aws_secret_access_key: str
    aws_bucket: str
    aws_region: str = "us-west-2"
    base_dir: str = ""
    mongodb_version: str = "4.2"
    mongodb_package: str = "mongodb-org"
    db_host: str = "localhost"
    db_port: int = 27017
    db_name: str = "admin"
    db_user: str = "admin"
    backend_port: int = 5003
    frontend_port: int = 3007
    cert_method: CertMethod = "selfsigned"
    acme_email: str = ""
    cert_valid_days: int = 365
    cert_country: str = "US"
    cert_province: str = "Denial"
    cert_city: str = "Springfield"
    cert_organization: str = "Department"
    build_max_runs: int = BUILD_MAX_RUNS
    frontend_settings_file: str = "constants/projectSettings.js"
    upstream_admin_host: str = ""

    def __post_init__(self):
        if not self.base_dir:
            object.__setattr__(self, "base_dir", f"/var/www/{self.label}")

    @property
    def site_domain(self) -> str:
        """``www.example.com`` -> ``example.com``"""
        return ".".join(self.domain.split(".")[-2:])

    @property
    def label(self) -> str:
        return self.site_domain.split(".")[0]

    @property
    def admin_domain(self) -> str:
        return f"admin.{self.site_domain}"

    @property
    def server_names(self) -> list[str]:
        return [self.site_domain, f"www.{self.site_domain}", self.admin_domain]

    @property
    def backend_dir(self) -> str:
        return f"{self.base_dir}/backend/{repo_name(self.backend_repo)}"

    @property
    def frontend_dir(self) -> str:
        return f"{self.base_dir}/frontend/{repo_name(self.frontend_repo)}"

    @property
    def backend_process(self) -> str:
        return f"{self.label}-backend"

    @property
    def frontend_process(self) -> str:
        return f"{self.label}-frontend"

    @property
    def mongodb_uri(self) -> str:
        credentials = f"{quote(self.db_user, safe='')}:{quote(self.db_password, safe='')}"
        return (
            f"mongodb://{credentials}@{self.db_host}:{self.db_port}/{self.db_name}"
            "?retryWrites=true&w=majority"
        )

    @property
    def mongodb_source_list(self) -> str:
        return f"/etc/apt/sources.list.d/mongodb-org-{self.mongodb_version}.list"

    @property
    def cert_common_name(self) -> str:
        return f"www.{self.site_domain}"

    @property
    def selfsigned_dir(self) -> str:
        return f"/etc/ssl/{self.label}"

    @property
    def cert_path(self) -> str:
        if self.cert_method == "acme":
            return f"{LETSENCRYPT_LIVE_DIR}/{self.site_domain}/fullchain.pem"
        return f"{self.selfsigned_dir}/{self.cert_common_name}.cert"

    @property
    def key_path(self) -> str:
        if self.cert_method == "acme":
            return f"{LETSENCRYPT_LIVE_DIR}/{self.site_domain}/privkey.pem"
        return f"{self.selfsigned_dir}/{self.cert_common_name}.key"


def load_config(path: str | None = None, **overrides) -> Config:
    """Build the run configuration from an optional dotenv file plus overrides.

    Calls ``error()`` for a missing file, missing required values, bad
    integers or an unknown certificate method.

    :param path: ``KEY=value`` file, keys are upper-case field names
    :param overrides: field values taking precedence over the file; None is ignored
    """
    values: dict = {}
    if path:
        if not Path(path).exists():
            error(f"Config file not found: {path}")
        values = {
            key.lower(): value
            for key, value in dotenv_values(path).items()
            if value is not None
        }
    values.update({k: v for k, v in overrides.items() if v is not None})
    # a blank value falls back to the default, or counts as missing if required
    values = {k: v for k, v in values.items() if str(v).strip()}

    known = {f.name: f for f in fields(Config)}
    unknown = sorted(set(values) - set(known))
    if unknown:
        warn(f"Ignoring unknown config keys: {', '.join(k.upper() for k in unknown)}")

    missing = [
        name.upper()
        for name, f in known.items()
        if f.default is MISSING and name not in values
    ]
    if missing:
        error(f"Missing required config values: {', '.join(missing)}")

    kwargs = {}
    for name, f in known.items():
        if name not in values:
            continue
        value = values[name]
        if f.type is int:
            try:
                value = int(value)
            except (TypeError, ValueError):
                error(f"{name.upper()} must be an integer, got {value!r}")
        else:
            value = str(value).strip()
        kwargs[name] = value

    config = Config(**kwargs)

    if "." not in config.domain:
        error(f"DOMAIN must be a fully-qualified domain name, got {config.domain!r}")
    if config.cert_method not in ("selfsigned", "acme"):
        error(f"CERT_METHOD must be 'selfsigned' or 'acme', got {config.cert_method!r}")
    if config.cert_method == "acme" and not config.acme_email:
        error("ACME_EMAIL is required for CERT_METHOD=acme")
    for name in ("db_port", "backend_port", "frontend_port"):
        port = getattr(config, name)
        if not 0 < port < 65536:
            error(f"{name.upper()} out of range: {port}")
    if config.build_max_runs < 1:
        error("BUILD_MAX_RUNS must be at least 1")
    return config


class PackageStatus(IntEnum):
    INSTALLED = 0
    INVALID_USAGE = 1
    INVALID_NAME = 2
    NOT_INSTALLED = 3


def is_package_installed(*packages: str, host: Host | None = None) -> PackageStatus:
    """Check whether an apt package is installed, without side effects.

    :param packages: exactly one package name
    :param host: host to query (default: this machine)
    :return: INSTALLED or NOT_INSTALLED; INVALID_USAGE for a wrong number
        of names, INVALID_NAME for an empty or blank name
    """
    if len(packages) != 1:
        warn(f"Invalid function call: expected one package name, got {len(packages)}")
        return PackageStatus.INVALID_USAGE
    package = packages[0]
    if not package or not package.strip():
        warn("Invalid package specifier")
        return PackageStatus.INVALID_NAME
    host = host or LocalHost()
    if not host.package_installed(package):
        return PackageStatus.NOT_INSTALLED
    return PackageStatus.INSTALLED


def install_apt_package(host: Host, package: str) -> PackageStatus:
    """Installs only if missing. Calls ``error()`` if the install fails."""
    status = is_package_installed(package, host=host)
    if status != PackageStatus.NOT_INSTALLED:
        return status
    log(f"Installing {package} via apt...")
    result = host.install_package(package)
    if not result.ok:
        error(f"Installing {package} failed: {(result.stderr or result.stdout).strip()}")
    log(f"Installed {package}")
    return PackageStatus.INSTALLED


def install_npm_package(host: Host, package: str):
    if host.npm_package_installed(package):
        return
    log(f"Installing {package} via npm...")
    result = host.install_npm_package(package)
    if not result.ok:
        error(f"Installing {package} failed: {(result.stderr or result.stdout).strip()}")
    log(f"Installed {package}")


def run_with_retries(
    host: Host,
    cmd: str,
    *,
    cwd: str | None = None,
    max_runs: int = BUILD_MAX_RUNS,
    description: str | None = None,
) -> int:
    """Retries immediately, without backoff. Calls ``error()`` if every run fails.


    :return: number of runs it took to succeed
    """
    description = description or cmd
    for attempt in range(1, max_runs + 1):
        result = host.run(cmd, sudo=True, cwd=cwd)
        if result.ok:
            log(f"{description}: done ({attempt}/{max_runs})")
            return attempt
        warn(f"{description} failed ({attempt}/{max_runs})")
    error(f"{description} failed after {max_runs} attempts")


def resolve_dns_a(domain: str, nameserver: str = "8.8.8.8") -> str | None:
    """Resolve domain to IPv4 address using specified nameserver.

    :param domain: Domain name to resolve
    :param nameserver: DNS nameserver IP (default: 8.8.8.8)
    :return: First A record IP address, or None if resolution fails
    """
    try:
        resolver = dns.resolver.Resolver()
        resolver.nameservers = [nameserver]
        answer = resolver.resolve(domain, "A")
        return str(answer[0]) if answer else None
    except Exception:
        return None


def is_valid_ip(ip: str) -> bool:
    parts = ip.split(".")
    return len(parts) == 4 and all(
        part.isdigit() and 0 <= int(part) <= 255 for part in parts
    )


def generate_mongod_unit(auth: bool = False) -> str:
    flags = "--quiet --auth" if auth else "--quiet"
    return dedent(f"""
        [Unit]
        Description=High-performance, schema-free document-oriented database
        After=network.target
        Documentation=https://docs.mongodb.org/manual

        [Service]
        User=mongodb
        Group=mongodb
        ExecStart=/usr/bin/mongod {flags} --config /etc/mongod.conf

        [Install]
        WantedBy=multi-user.target
    """).lstrip()


def mongo_eval(script: str) -> str:
    return f"mongo --quiet --eval {shlex.quote(script)}"


def generate_backend_env(config: Config) -> str:
    site_url = f"https://{config.site_domain}"
    return dedent(f"""
        PORT={config.backend_port}
        CLIENT_URL="{site_url}"
        serverurl="{site_url}"
        MONGOLAB_URI="{config.mongodb_uri}"
        GOOGLE_CLIENT_ID={config.google_client_id}
        GOOGLE_CLIENT_SECRET={config.google_client_secret}
        ACCESSKEYID={config.aws_access_key_id}
        REGION={config.aws_region}
        SECRETACCESSKEY={config.aws_secret_access_key}
        BUCKET={config.aws_bucket}
    """).lstrip()


NEXT_SCRIPT_PATTERN = re.compile(r'("(?:dev|start)":\s*"next (?:dev|start))(?: -p \d+)?"')
BASE_URL_PATTERN = re.compile(r"^(export const baseUrl\s*=\s*).*$", re.MULTILINE)


def set_next_port(package_json: str, port: int) -> str:
    """Make the ``next dev`` and ``next start`` scripts listen on ``port``."""
    return NEXT_SCRIPT_PATTERN.sub(lambda m: f'{m.group(1)} -p {port}"', package_json)


def set_base_url(settings: str, admin_domain: str, upstream_admin_host: str = "") -> str:
    settings = BASE_URL_PATTERN.sub(
        lambda m: f'{m.group(1)}"https://{admin_domain}";', settings
    )
    if upstream_admin_host:
        settings = settings.replace(upstream_admin_host, admin_domain)
    return settings


def generate_openssl_config(config: Config) -> str:
    """Request config for ``openssl req -config``.

    Carries the subjectAltNames in an extensions section, since ``-addext``
    needs OpenSSL 1.1.1 and xenial ships 1.0.2.
    """
    alt_names = ",".join(f"DNS:{name}" for name in config.server_names)
    return dedent(f"""
        [req]
        prompt = no
        distinguished_name = dn
        x509_extensions = v3_req

        [dn]
        C = {config.cert_country}
        ST = {config.cert_province}
        L = {config.cert_city}
        O = {config.cert_organization}
        CN = {config.cert_common_name}

        [v3_req]
        basicConstraints = CA:FALSE
        keyUsage = digitalSignature, keyEncipherment
        extendedKeyUsage = serverAuth
        subjectAltName = {alt_names}
    """).lstrip()


def generate_nginx_server_block(
    server_name: str, port: int, cert_path: str, key_path: str
) -> str:
    """
    :param server_name: space separated names served by this block
    :param port: backend port to proxy to
    """
    proxy_block = dedent("""
        proxy_pass http://127.0.0.1:{port};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection 'upgrade';
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_cache_bypass $http_upgrade;
    """).strip().format(port=port)

    return dedent("""
        server {{
            listen 443 ssl;
            listen [::]:443 ssl;
            server_name {server_name};

            ssl_certificate {cert_path};
            ssl_certificate_key {key_path};

            location / {{
        {proxy_block}
            }}
        }}
    """).strip().format(
        server_name=server_name,
        cert_path=cert_path,
        key_path=key_path,
        proxy_block=indent(proxy_block, " " * 8),
    )


def generate_nginx_config(config: Config) -> str:
    redirect_block = dedent("""
        server {
            listen 80 default_server;
            listen [::]:80 default_server;
            server_name _;
            return 301 https://$host$request_uri;
        }
    """).strip()
    site_block = generate_nginx_server_block(
        f"{config.site_domain} www.{config.site_domain}",
        config.frontend_port,
        config.cert_path,
        config.key_path,
    )
    admin_block = generate_nginx_server_block(
        config.admin_domain, config.backend_port, config.cert_path, config.key_path
    )
    return "\n\n".join([redirect_block, site_block, admin_block]) + "\n"


def install_packages(host: Host, config: Config):
    action(host, "Updating apt database", "apt-get update")
    for package in BASE_PACKAGES:
        install_apt_package(host, package)
    for package in NPM_PACKAGES:
        install_npm_package(host, package)


def install_mongodb(host: Host, config: Config) -> bool:
    """:return: True if the service is running afterwards"""
    remove_conf_files(host, config)

    codename = host.os_codename()
    key_id = MONGODB_SIGNING_KEYS.get(codename)
    if not key_id:
        error(
            f"Unsupported OS release {codename or 'unknown'!r} "
            f"(supported: {', '.join(MONGODB_SIGNING_KEYS)})"
        )

    action(
        host,
        "Adding keyserver",
        f"apt-key adv --keyserver {MONGODB_KEYSERVER} --recv {key_id}",
    )
    source = (
        f"deb http://repo.mongodb.org/apt/ubuntu "
        f"{codename}/mongodb-org/{config.mongodb_version} multiverse\n"
    )
    action_result(
        host,
        "Creating MongoDB source list file",
        host.write_file(config.mongodb_source_list, source),
    )
    action(host, "Updating apt database", "apt-get update")
    status = install_apt_package(host, config.mongodb_package)
    if status != PackageStatus.INSTALLED:
        error(f"Cannot install MongoDB package {config.mongodb_package!r} (status {int(status)})")

    action_result(
        host,
        f"Writing {MONGODB_SERVICE} service unit",
        host.write_file(MONGODB_UNIT_PATH, generate_mongod_unit()),
    )
    action(host, "Reloading daemon configuration", "systemctl daemon-reload")
    action_result(host, f"Starting {MONGODB_SERVICE}", host.service(MONGODB_SERVICE, "start"))
    action_result(host, f"Enabling {MONGODB_SERVICE}", host.service(MONGODB_SERVICE, "enable"))

    time.sleep(SERVICE_STARTUP_DELAY)
    return action_result(
        host,
        f"Checking status of {MONGODB_SERVICE}",
        host.service(MONGODB_SERVICE, "is-active"),
    )


def bootstrap_database(host: Host, config: Config):
    """Recreates the admin user, then restarts mongod with authentication on."""
    user, db = config.db_user, config.db_name
    select_db = f"db = db.getSiblingDB({json.dumps(db)});"

    action(
        host,
        f"Deleting MongoDB user {user}",
        mongo_eval(f"{select_db} if (db.getUser({json.dumps(user)})) db.dropUser({json.dumps(user)});"),
        sudo=False,
    )
    new_user = {
        "user": user,
        "pwd": config.db_password,
        "roles": [{"role": "root", "db": db}],
    }
    action(
        host,
        f"Adding initial user {user} to database",
        mongo_eval(f"{select_db} db.createUser({json.dumps(new_user)});"),
        sudo=False,
    )

    action_result(
        host,
        f"Adapting {MONGODB_SERVICE} configuration",
        host.write_file(MONGODB_UNIT_PATH, generate_mongod_unit(auth=True)),
    )
    action(host, "Reloading daemon configuration", "systemctl daemon-reload")
    action_result(host, f"Restarting {MONGODB_SERVICE}", host.service(MONGODB_SERVICE, "restart"))


def setup_database(host: Host, config: Config):
    if is_package_installed(config.mongodb_package, host=host) == PackageStatus.INSTALLED:
        log(f"{config.mongodb_package} already installed, skipping database setup")
        return
    if not install_mongodb(host, config):
        warn(f"{MONGODB_SERVICE} is not running, user bootstrap will likely fail")
    bootstrap_database(host, config)


def checkout_repository(host: Host, uri: str, path: str):
    """Clones ``uri`` into ``path``, or pulls if ``path`` is already a checkout of it."""
    name = posixpath.basename(path)
    parent = posixpath.dirname(path)
    if not host.exists(parent):
        action(host, f"Creating {parent}", f"mkdir -p {shlex.quote(parent)}")

    if not host.exists(f"{path}/.git"):
        if host.exists(path):
            warn(f"{path} exists but is not a git checkout, leaving it untouched")
            host.failures.append(f"Checking out {name}")
            return
        action(host, f"Cloning {name}", f"git clone {shlex.quote(uri)} {shlex.quote(path)}")
        return

    origin = host.run(f"git -C {shlex.quote(path)} remote get-url origin", sudo=True)
    if origin.stdout.strip() != uri:
        warn(
            f"{path} is a checkout of {origin.stdout.strip() or 'an unknown origin'}, "
            f"expected {uri}; leaving it untouched"
        )
        host.failures.append(f"Checking out {name}")
        return
    # configure_frontend patches tracked files and re-applies the patches after the pull
    action(host, f"Discarding local changes in {name}", f"git -C {shlex.quote(path)} checkout -- .")
    action(host, f"Pulling {name}", f"git -C {shlex.quote(path)} pull --ff-only")


def checkout_sources(host: Host, config: Config):
    checkout_repository(host, config.backend_repo, config.backend_dir)
    checkout_repository(host, config.frontend_repo, config.frontend_dir)


def install_dependencies(host: Host, config: Config):
    for name, path in (("frontend", config.frontend_dir), ("backend", config.backend_dir)):
        action(host, f"Installing {name} dependencies", "npm install --unsafe-perm", cwd=path)


def patch_file(host: Host, description: str, path: str, patch: Callable[[str], str]):
    content = host.read_file(path)
    if content is None:
        warn(f"{description}: {path} not found")
        host.failures.append(description)
        return
    patched = patch(content)
    if patched == content:
        log(f"{description}: already up to date")
        return
    action_result(host, description, host.write_file(path, patched))


def configure_frontend(host: Host, config: Config):
    patch_file(
        host,
        "Adapting frontend port",
        f"{config.frontend_dir}/package.json",
        lambda text: set_next_port(text, config.frontend_port),
    )
    patch_file(
        host,
        "Adapting frontend url",
        f"{config.frontend_dir}/{config.frontend_settings_file}",
        lambda text: set_base_url(text, config.admin_domain, config.upstream_admin_host),
    )
    run_with_retries(
        host,
        "npm run build",
        cwd=config.frontend_dir,
        max_runs=config.build_max_runs,
        description="Building frontend",
    )


def configure_backend(host: Host, config: Config):
    action_result(
        host,
        "Writing backend environment file",
        host.write_file(f"{config.backend_dir}/.env", generate_backend_env(config)),
    )


def start_process(host: Host, name: str, cwd: str):
    if host.run(f"pm2 describe {shlex.quote(name)}", sudo=True).ok:
        action(host, f"Restarting {name}", f"pm2 restart {shlex.quote(name)}", cwd=cwd)
    else:
        action(host, f"Starting {name}", f"pm2 start 'npm start' --name {shlex.quote(name)}", cwd=cwd)


def start_processes(host: Host, config: Config):
    time.sleep(PROCESS_STARTUP_DELAY)
    start_process(host, config.backend_process, config.backend_dir)
    time.sleep(PROCESS_STARTUP_DELAY)
    start_process(host, config.frontend_process, config.frontend_dir)
    action(host, "Saving pm2 process list", "pm2 save")


def generate_selfsigned_cert(host: Host, config: Config):
    install_apt_package(host, "openssl")
    if host.exists(config.cert_path) and host.exists(config.key_path):
        log(f"Certificate for {config.cert_common_name} exists, skipping")
        return

    action(host, f"Creating {config.selfsigned_dir}", f"mkdir -p {shlex.quote(config.selfsigned_dir)}")
    openssl_config = f"{config.selfsigned_dir}/openssl.cnf"
    action_result(
        host,
        "Writing certificate request config",
        host.write_file(openssl_config, generate_openssl_config(config)),
    )
    cmd = (
        f"openssl req -new -newkey rsa:4096 -days {config.cert_valid_days} -nodes -x509 "
        f"-config {shlex.quote(openssl_config)} -extensions v3_req "
        f"-keyout {shlex.quote(config.key_path)} -out {shlex.quote(config.cert_path)}"
    )
    if action(host, "Creating self signed certificate", cmd).ok:
        host.run(f"chmod 600 {shlex.quote(config.key_path)}", sudo=True)


def issue_acme_certificate(host: Host, config: Config):
    ip = host.ip
    for name in config.server_names:
        resolved = resolve_dns_a(name)
        if not resolved:
            warn(f"DNS: {name} has no A record, certificate issuance will likely fail")
        elif ip and is_valid_ip(ip) and resolved != ip:
            warn(f"DNS mismatch: {name} -> {resolved} (expected {ip})")

    install_apt_package(host, "certbot")
    install_apt_package(host, "python3-certbot-nginx")

    domains = " ".join(f"-d {name}" for name in config.server_names)
    cmd = (
        f"certbot certonly --nginx {domains} --cert-name {config.site_domain} "
        f"--non-interactive --agree-tos --email {shlex.quote(config.acme_email)}"
    )
    if host.exists(f"{LETSENCRYPT_LIVE_DIR}/{config.site_domain}"):
        log("Certificate exists, renewing if needed...")
        cmd += " --keep-until-expiring"
    action(host, "Obtaining SSL certificate", cmd)


def provision_certificate(host: Host, config: Config):
    if config.cert_method == "acme":
        issue_acme_certificate(host, config)
    else:
        generate_selfsigned_cert(host, config)


def setup_nginx(host: Host, config: Config):
    install_apt_package(host, "nginx-light")

    available = f"{NGINX_SITES_AVAILABLE}/{config.label}"
    action_result(
        host,
        "Writing nginx site configuration",
        host.write_file(available, generate_nginx_config(config)),
    )
    action(
        host,
        "Enabling nginx site",
        f"ln -sf {available} {NGINX_SITES_ENABLED}/ && rm -f {NGINX_SITES_ENABLED}/default",
    )
    if action(host, "Testing nginx configuration", "nginx -t").ok:
        action_result(host, "Reloading nginx", host.service("nginx", "reload"))


def remove_conf_files(host: Host, config: Config):
    """Removes MongoDB apt source and unit files left by a previous installation."""
    for kind, path in (
        ("source list file", config.mongodb_source_list),
        ("system service file", MONGODB_UNIT_PATH),
    ):
        if host.exists(path):
            action_result(
                host, f"Removing {kind} {posixpath.basename(path)}", host.remove(path)
            )


def remove_installation(host: Host, config: Config):
    """Undo a provisioning run so it can be repeated from scratch.

    Let's Encrypt certificates are kept.
    """
    installed = is_package_installed(config.mongodb_package, host=host) == PackageStatus.INSTALLED
    if installed:
        action_result(host, f"Stopping {MONGODB_SERVICE}", host.service(MONGODB_SERVICE, "stop"))

    action(host, "Removing pm2 processes", "pm2 delete all")
    if host.exists(config.selfsigned_dir):
        action_result(host, "Removing self signed certificate", host.remove(config.selfsigned_dir))

    site = f"{NGINX_SITES_AVAILABLE}/{config.label}"
    if host.exists(site):
        host.remove(f"{NGINX_SITES_ENABLED}/{config.label}")
        action_result(host, "Removing nginx site configuration", host.remove(site))

    if installed:
        action_result(
            host, f"Deinstalling {config.mongodb_package}", host.purge_package(config.mongodb_package)
        )

    action_result(host, f"Removing {config.base_dir}", host.remove(config.base_dir))
    remove_conf_files(host, config)


@dataclass(frozen=True)
class Step:
    name: str
    help: str
    func: Callable[[Host, Config], object]


STEPS = [
    Step("packages", "Install OS packages and pm2", install_packages),
    Step("database", "Install and bootstrap MongoDB", setup_database),
    Step("checkout", "Clone or update the frontend and backend", checkout_sources),
    Step("dependencies", "Install JavaScript dependencies", install_dependencies),
    Step("frontend", "Configure and build the frontend", configure_frontend),
    Step("backend", "Write the backend environment file", configure_backend),
    Step("processes", "Start backend and frontend under pm2", start_processes),
    Step("certificate", "Provision the TLS certificate", provision_certificate),
    Step("proxy", "Configure nginx", setup_nginx),
]


def provision(host: Host, config: Config, start_at: str | None = None) -> list[str]:
    """Run the steps in order, optionally resuming at ``start_at``.

    :return: descriptions of actions that failed without aborting the run
    """
    names = [step.name for step in STEPS]
    if start_at and start_at not in names:
        error(f"Unknown step: {start_at}. Available: {', '.join(names)}")
    steps = STEPS[names.index(start_at):] if start_at else STEPS

    for i, step in enumerate(steps, 1):
        log(f"[{i}/{len(steps)}] {step.help}...")
        step.func(host, config)

    print("=" * 50)
    if host.failures:
        warn(f"Finished with {len(host.failures)} failed action(s):")
        for failure in host.failures:
            print(f"  - {failure}")
    else:
        log(f"Done! https://{config.site_domain}")
    return host.failures


@app.command(name="run")
def run_provision(
    *,
    config: str | None = None,
    host: str | None = None,
    ssh_user: str = "root",
    domain: str | None = None,
    cert_method: CertMethod | None = None,
    email: str | None = None,
    start_at: str | None = None,
    clean: bool = False,
):
    """Provision the VM: packages, database, sources, build, pm2, certificate, nginx.

    :param config: Config file with KEY=value lines (see site.env.example)
    :param host: Server IP or hostname to provision over SSH (default: this machine)
    :param ssh_user: SSH user for connection
    :param domain: Domain name, overrides DOMAIN
    :param cert_method: Certificate method, overrides CERT_METHOD
    :param email: Email for Let's Encrypt, overrides ACME_EMAIL
    :param start_at: Resume at this step (see the steps command)
    :param clean: Remove a previous installation first
    """
    cfg = load_config(config, domain=domain, cert_method=cert_method, acme_email=email)
    target = get_host(host, ssh_user)

    log(f"Provisioning {cfg.domain} on {host or 'localhost'}")
    print("=" * 50)

    if clean:
        remove_installation(target, cfg)
        target.failures.clear()
    provision(target, cfg, start_at=start_at)


@app.command(name="steps")
def list_steps():
    """List the provisioning steps in the order they run."""
    for i, step in enumerate(STEPS, 1):
        print(f"  {i}. {step.name}: {step.help}")


@app.command(name="status")
def show_status(*, host: str | None = None, ssh_user: str = "root"):
    """Show database, nginx and PM2 process status.

    :param host: Server IP or hostname (default: this machine)
    :param ssh_user: SSH user for connection
    """
    target = get_host(host, ssh_user)
    for service in (MONGODB_SERVICE, "nginx"):
        state = target.service(service, "is-active").stdout.strip() or "unknown"
        print(f"  {service}: {state}")
    print(target.run("pm2 list", sudo=True).stdout)


@app.command(name="remove")
def remove(
    *,
    config: str | None = None,
    host: str | None = None,
    ssh_user: str = "root",
    force: bool = False,
):
    """Remove the database, PM2 processes, checkouts and generated files.

    :param config: Config file used for provisioning
    :param host: Server IP or hostname (default: this machine)
    :param ssh_user: SSH user for connection
    :param force: Skip confirmation
    """
    cfg = load_config(config)
    target = get_host(host, ssh_user)

    print("[yellow]Installation to remove:[/yellow]")
    print(f"  Host: {host or 'localhost'}")
    print(f"  Domain: {cfg.domain}")
    print(f"  Directory: {cfg.base_dir}")
    print(f"  Database package: {cfg.mongodb_package}")

    if not force:
        confirm = input("Remove this installation? (yes/no): ")
        if confirm != "yes":
            log("Cancelled")
            return

    remove_installation(target, cfg)
    log("Installation removed")


@app.command(name="check-package")
def check_package(*packages: str, host: str | None = None, ssh_user: str = "root"):
    """Report whether an apt package is installed; the exit code is the status.

    0 installed, 1 invalid usage, 2 invalid package name, 3 not installed.

    :param packages: Package name
    :param host: Server IP or hostname (default: this machine)
    :param ssh_user: SSH user for connection
    """
    status = is_package_installed(*packages, host=get_host(host, ssh_user))
    print(f"  {' '.join(packages) or '(none)'}: {status.name.lower().replace('_', ' ')}")
    sys.exit(int(status))


if __name__ == "__main__":
    app()
