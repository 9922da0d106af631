"""Shared fixtures: an in-memory host and a complete configuration.

No test touches the real system; every step runs against FakeHost.
"""

import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Ensure project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from provision_vm import CommandResult, Config


class FakeHost:
    """Host double: records commands and serves packages and files from memory.

    ``respond(fragment, *results)`` scripts the result of every command
    containing ``fragment``; with several results they are returned in turn
    and the last one repeats.
    """

    def __init__(self, packages=(), npm_packages=(), files=None, dirs=(), codename="bionic", ip=None):
        self.failures = []
        self.ip = ip
        self.packages = set(packages)
        self.npm_packages = set(npm_packages)
        self.broken_packages = set()
        self.files = dict(files or {})
        self.dirs = set(dirs)
        self.codename = codename
        self.commands = []
        self.installed = []
        self.npm_installed = []
        self.purged = []
        self.removed = []
        self.services = []
        self._responses = {}

    def respond(self, fragment, *results):
        self._responses[fragment] = list(results)

    def _result(self, cmd):
        for fragment, results in self._responses.items():
            if fragment in cmd:
                return results.pop(0) if len(results) > 1 else results[0]
        return CommandResult(0)

    def ran(self, fragment):
        return [cmd for cmd in self.commands if fragment in cmd]

    def run(self, cmd, *, sudo=False, cwd=None):
        self.commands.append(cmd)
        return self._result(cmd)

    def package_installed(self, package):
        return package in self.packages

    def install_package(self, package):
        self.installed.append(package)
        if package in self.broken_packages:
            return CommandResult(100, stderr=f"E: Unable to locate package {package}")
        self.packages.add(package)
        return CommandResult(0)

    def purge_package(self, package):
        self.purged.append(package)
        self.packages.discard(package)
        return CommandResult(0)

    def npm_package_installed(self, package):
        return package in self.npm_packages

    def install_npm_package(self, package):
        self.npm_installed.append(package)
        self.npm_packages.add(package)
        return CommandResult(0)

    def write_file(self, path, content):
        self.files[path] = content
        return CommandResult(0)

    def read_file(self, path):
        return self.files.get(path)

    def exists(self, path):
        prefix = path.rstrip("/") + "/"
        return (
            path in self.files
            or path in self.dirs
            or any(p.startswith(prefix) for p in [*self.files, *self.dirs])
        )

    def remove(self, path):
        self.removed.append(path)
        prefix = path.rstrip("/") + "/"
        self.files = {p: c for p, c in self.files.items() if p != path and not p.startswith(prefix)}
        self.dirs = {d for d in self.dirs if d != path and not d.startswith(prefix)}
        return CommandResult(0)

    def service(self, name, action):
        self.services.append((name, action))
        return self._result(f"systemctl {action} {name}")

    def os_codename(self):
        return self.codename


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def config():
    return Config(
        domain="www.example.com",
        backend_repo="https://github.com/example/shop-backend.git",
        frontend_repo="https://github.com/example/shop-frontend.git",
        db_password="s3cret",
        google_client_id="client-id.apps.googleusercontent.com",
        google_client_secret="client-secret",
        aws_access_key_id="AKIAEXAMPLE",
        aws_secret_access_key="aws-secret",
        aws_bucket="shop-assets",
    )


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("provision_vm.time.sleep") as mock_sleep:
        yield mock_sleep
