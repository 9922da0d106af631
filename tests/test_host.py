"""Tests for the shell command adapter.

subprocess and fabric are mocked. Each test checks the exact command string
a capability sends to the machine.
"""

import shlex
from unittest.mock import MagicMock, patch

from provision_vm import CommandResult, LocalHost, RemoteHost


def _make_result(returncode: int = 0, stdout: str = "", stderr: str = "") -> MagicMock:
    """Create a mock subprocess.CompletedProcess."""
    result = MagicMock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


def _local_host(user: str = "root") -> LocalHost:
    host = LocalHost()
    host.user = user
    return host


def _sent(mock_run) -> str:
    """The command line handed to ``bash -c``."""
    args = mock_run.call_args[0][0]
    assert args[:2] == ["bash", "-c"]
    return args[2]


# ============================================================================
# TestLocalHostUser
# ============================================================================

class TestLocalHostUser:

    def test_effective_root_is_root(self):
        with patch("provision_vm.os.geteuid", return_value=0), \
             patch("provision_vm.getpass.getuser", return_value="deploy"):
            assert LocalHost().user == "root"

    def test_unprivileged_uses_login_name(self):
        with patch("provision_vm.os.geteuid", return_value=1000), \
             patch("provision_vm.getpass.getuser", return_value="deploy"):
            host = LocalHost()
        assert host.user == "deploy"
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.remove("/tmp/build")
        assert _sent(mock_run) == "sudo bash -c 'rm -rf /tmp/build'"

    def test_has_no_ip(self):
        assert LocalHost().ip is None


# ============================================================================
# TestRun
# ============================================================================

class TestRun:

    def test_plain_command(self):
        host = _local_host("deploy")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.run("pm2 list")
        assert _sent(mock_run) == "pm2 list"

    def test_root_is_not_wrapped_in_sudo(self):
        host = _local_host("root")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.run("apt-get update", sudo=True)
        assert _sent(mock_run) == "apt-get update"

    def test_sudo_for_non_root(self):
        host = _local_host("deploy")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.run("apt-get update", sudo=True)
        assert _sent(mock_run) == "sudo bash -c 'apt-get update'"

    def test_cwd(self):
        host = _local_host("root")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.run("npm run build", cwd="/var/www/example/frontend/shop")
        assert _sent(mock_run) == "cd /var/www/example/frontend/shop && npm run build"

    def test_cwd_goes_inside_sudo(self):
        host = _local_host("deploy")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.run("ls", sudo=True, cwd="/srv/my app")
        inner = "cd '/srv/my app' && ls"
        assert _sent(mock_run) == "sudo bash -c " + shlex.quote(inner)

    def test_result_is_captured(self):
        host = _local_host("root")
        with patch(
            "provision_vm.subprocess.run", return_value=_make_result(2, "out", "err")
        ) as mock_run:
            result = host.run("false")
        assert result == CommandResult(2, "out", "err")
        assert not result.ok
        assert mock_run.call_args[1] == {"capture_output": True, "text": True}


# ============================================================================
# TestCapabilities
# ============================================================================

class TestCapabilities:

    def test_package_installed_queries_dpkg_status(self):
        host = _local_host("deploy")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            assert host.package_installed("nginx-light") is True
        assert _sent(mock_run) == (
            "dpkg-query -W -f='${Status}' nginx-light 2>/dev/null"
            " | grep -q 'install ok installed'"
        )

    def test_package_not_installed(self):
        host = _local_host("root")
        with patch("provision_vm.subprocess.run", return_value=_make_result(1)):
            assert host.package_installed("nginx-light") is False

    def test_install_package_as_root(self):
        host = _local_host("root")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.install_package("git")
        assert _sent(mock_run) == "DEBIAN_FRONTEND=noninteractive apt-get -y install git"

    def test_install_package_as_non_root(self):
        host = _local_host("deploy")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.install_package("git")
        assert _sent(mock_run) == (
            "sudo bash -c 'DEBIAN_FRONTEND=noninteractive apt-get -y install git'"
        )

    def test_purge_package(self):
        host = _local_host("root")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.purge_package("mongodb-org")
        assert _sent(mock_run) == "apt-get -y purge mongodb-org"

    def test_npm_packages(self):
        host = _local_host("deploy")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.npm_package_installed("pm2")
            assert _sent(mock_run) == "npm list -g pm2"
            host.install_npm_package("pm2")
            assert _sent(mock_run) == "sudo bash -c 'npm install -g pm2'"

    def test_write_file_as_root(self):
        host = _local_host("root")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.write_file("/etc/nginx/sites-available/example", "hello\n")
        assert _sent(mock_run) == (
            "echo 'aGVsbG8K' | base64 -d > /etc/nginx/sites-available/example"
        )

    def test_write_file_redirect_runs_under_sudo(self):
        host = _local_host("deploy")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.write_file("/etc/nginx/sites-available/example", "it's $HOME\n")
        inner = "echo 'aXQncyAkSE9NRQo=' | base64 -d > /etc/nginx/sites-available/example"
        assert _sent(mock_run) == "sudo bash -c " + shlex.quote(inner)

    def test_read_file(self):
        host = _local_host("root")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0, "PORT=5003\n")) as mock_run:
            assert host.read_file("/srv/app/.env") == "PORT=5003\n"
        assert _sent(mock_run) == "cat /srv/app/.env"

    def test_read_missing_file(self):
        host = _local_host("root")
        with patch("provision_vm.subprocess.run", return_value=_make_result(1, stderr="No such file")):
            assert host.read_file("/srv/app/.env") is None

    def test_exists(self):
        host = _local_host("root")
        with patch("provision_vm.subprocess.run", return_value=_make_result(1)) as mock_run:
            assert host.exists("/etc/ssl/example") is False
        assert _sent(mock_run) == "test -e /etc/ssl/example"

    def test_service(self):
        host = _local_host("deploy")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0)) as mock_run:
            host.service("nginx", "reload")
        assert _sent(mock_run) == "sudo bash -c 'systemctl reload nginx'"

    def test_os_codename(self):
        host = _local_host("root")
        with patch("provision_vm.subprocess.run", return_value=_make_result(0, "bionic\n")) as mock_run:
            assert host.os_codename() == "bionic"
        assert _sent(mock_run) == "lsb_release -sc"


# ============================================================================
# TestRemoteHost
# ============================================================================

class TestRemoteHost:

    def _connection(self, mock_connection, return_code=0, stdout="", stderr=""):
        conn = mock_connection.return_value.__enter__.return_value
        conn.run.return_value = MagicMock(return_code=return_code, stdout=stdout, stderr=stderr)
        return conn

    def test_runs_over_ssh(self):
        host = RemoteHost("203.0.113.10", user="root")
        with patch("provision_vm.Connection") as mock_connection:
            conn = self._connection(mock_connection, stdout="bionic\n")
            assert host.os_codename() == "bionic"
        mock_connection.assert_called_once_with(
            "203.0.113.10", user="root", connect_kwargs={"look_for_keys": True}
        )
        conn.run.assert_called_once_with("bash -c 'lsb_release -sc'", hide=True, warn=True)

    def test_non_root_user_gets_sudo(self):
        host = RemoteHost("203.0.113.10", user="deploy")
        with patch("provision_vm.Connection") as mock_connection:
            conn = self._connection(mock_connection)
            host.install_package("git")
        mock_connection.assert_called_once_with(
            "203.0.113.10", user="deploy", connect_kwargs={"look_for_keys": True}
        )
        inner = "sudo bash -c 'DEBIAN_FRONTEND=noninteractive apt-get -y install git'"
        conn.run.assert_called_once_with("bash -c " + shlex.quote(inner), hide=True, warn=True)

    def test_failure_is_returned(self):
        host = RemoteHost("203.0.113.10")
        with patch("provision_vm.Connection") as mock_connection:
            self._connection(mock_connection, return_code=1, stderr="nginx: [emerg]")
            result = host.run("nginx -t", sudo=True)
        assert result == CommandResult(1, "", "nginx: [emerg]")
        assert host.ip == "203.0.113.10"
