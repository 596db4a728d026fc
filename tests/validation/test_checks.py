from conftest import make_config

from serverforge.ports.registry import SERVICES, PortRegistry
from serverforge.system.probe import SystemProbe
from serverforge.validation.checks import post_install_checks, pre_install_checks
from serverforge.validation.gate import Phase, ValidationGate


def _ports(*, ssh=2222, k3s_api=16443):
    reg = PortRegistry(path=None)
    reg.allocate("ssh", ssh)
    reg.allocate("k3s_api", k3s_api)
    return reg.assignments


def _pre(host, config=None, **ports):
    probe = SystemProbe(host, host.root)
    checks = pre_install_checks(probe, config or make_config(), _ports(**ports), list(SERVICES))
    return ValidationGate().run(Phase.PRE, checks)


def _post(host, config=None, *, dry_run=False, current_ssh_port=None):
    probe = SystemProbe(host, host.root)
    checks = post_install_checks(
        probe, config or make_config(), _ports(), dry_run=dry_run, current_ssh_port=current_ssh_port,
    )
    return ValidationGate().run(Phase.POST, checks)


def test_fresh_ubuntu_host_passes_pre_install(host):
    result = _pre(host)
    assert result.passed, result.fatal
    assert result.warnings == ()


def test_non_ubuntu_host_fails(host):
    host.path("/etc/os-release").write_text("ID=debian\nVERSION_CODENAME=bookworm\n")
    result = _pre(host)
    assert not result.passed
    assert "ubuntu" in result.failed
    assert "detected debian" in result.fatal


def test_low_disk_and_memory_are_fatal(host):
    host.disk_kb = 1024 * 1024
    host.memory_mb = 512
    result = _pre(host)
    assert set(result.failed) == {"disk_space", "memory"}
    assert "available 1.0 GiB, required 5.0 GiB" in result.fatal
    assert "available 512 MB" in result.fatal


def test_port_held_by_foreign_process_is_fatal_for_uninstalled_service(host):
    host.listeners.append(("tcp", "0.0.0.0", 16443, "nginx"))
    result = _pre(host)
    assert result.failed == ("port_k3s_api",)
    assert "held by nginx" in result.fatal


def test_port_shared_with_installed_service_is_only_a_warning(host):
    host.binaries.add("k3s")
    host.listeners.append(("tcp", "0.0.0.0", 16443, "containerd"))
    result = _pre(host)
    assert result.passed
    assert result.failed == ("port_k3s_api_shared",)


def test_sshd_on_its_own_port_is_not_a_collision(host):
    result = _pre(host, ssh=22)
    assert result.passed


def test_post_install_fails_when_ssh_is_down(host):
    host.services["ssh"] = False
    host.listeners.clear()
    result = _post(host)
    assert not result.passed
    assert {"ssh_active", "ssh_listening"} <= set(result.failed)


def test_post_install_admin_access_is_fatal_live_and_a_warning_in_dry_run(host):
    live = _post(host)
    assert "admin_access_deploy" in live.failed
    assert not live.passed

    dry = _post(host, dry_run=True)
    assert dry.passed
    assert any("deploy" in w for w in dry.warnings)


def test_post_install_without_any_admin_account_is_fatal_even_in_dry_run(host):
    cfg = make_config(admin=None)
    result = _post(host, cfg, dry_run=True)
    assert not result.passed
    assert "lock out every user" in result.fatal


def test_post_install_passes_with_account_and_firewall(host):
    host.users["deploy"] = {"uid": 1000}
    host.groups["sudo"].append("deploy")
    keys = host.path("/home/deploy/.ssh/authorized_keys")
    keys.parent.mkdir(parents=True)
    keys.write_text(make_config().admin.ssh_keys[0] + "\n")
    host.binaries.add("ufw")
    host.ufw_active = True
    host.ufw_rules.append(("2222/tcp", "SSH"))

    result = _post(host)
    assert result.passed, result.fatal
    # nothing else was installed on this host
    assert "sshguard_active" in result.failed


def test_ssh_listening_without_process_names(host):
    host.ss_hides_processes = True
    result = _pre(host, ssh=22)
    assert result.passed, result.fatal

    result = _post(host, dry_run=True)
    assert "ssh_listening" not in result.failed
    assert result.passed, result.fatal


def test_unnamed_listener_does_not_count_when_ssh_is_down(host):
    host.ss_hides_processes = True
    host.services["ssh"] = False
    result = _post(host, dry_run=True, current_ssh_port=22)
    assert {"ssh_active", "ssh_listening"} <= set(result.failed)
