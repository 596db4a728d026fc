import pytest
from conftest import UBUNTU_SSHD_CONFIG

from serverforge.components.firewall import firewall_stage
from serverforge.components.hardening import apply_hardening, ssh_hardened, ssh_hardening_stage
from serverforge.deploy.errors import HardeningFailure
from serverforge.execution.runner import CommandError
from serverforge.observers.events import HardeningVerified

SOCKET_UNIT = """\
[Unit]
Description=OpenBSD Secure Shell server
After=network.target auditd.service
Requires=ssh.socket

[Service]
ExecStart=/usr/sbin/sshd -D $SSHD_OPTS
"""


def _prepared(ctx):
    ctx.ports = ctx.registry().resolve(ctx.config.ports)
    ctx.previous_ssh_port = 22
    firewall_stage(ctx).action()
    return ctx


def test_hardening_moves_ssh_and_closes_transition_port(host, ctx, capture):
    _prepared(ctx)
    assert not ssh_hardened(ctx)

    apply_hardening(ctx)

    assert host.ssh_ports() == [2222]
    assert ctx.hardening.verified
    assert ctx.hardening.banner.startswith("SSH-2.0-")
    assert ctx.hardening.transition_rule_removed
    assert "22/tcp" not in [s for s, _ in host.ufw_rules]

    config = host.path("/etc/ssh/sshd_config")
    assert config.read_text().startswith("# BEGIN serverforge hardening\nPort 2222\n")
    backup = host.path("/etc/ssh/sshd_config.backup.20261018_120000")
    assert backup.read_text() == UBUNTU_SSHD_CONFIG

    events = capture.of(HardeningVerified)
    assert events and events[-1].listening and events[-1].port == 2222
    assert ssh_hardened(ctx)


def test_rejected_config_is_restored_before_restart(host, ctx):
    _prepared(ctx)
    host.fail_on("sshd", "-t", rc=255, stderr="line 3: Bad configuration option")

    with pytest.raises(CommandError) as exc:
        apply_hardening(ctx)

    assert exc.value.exit_code == 255
    assert host.path("/etc/ssh/sshd_config").read_text() == UBUNTU_SSHD_CONFIG
    assert not host.ran("systemctl", "restart", "ssh")
    assert ctx.hardening is None
    assert host.ssh_ports() == [22]


def test_unverified_port_raises_hardening_failure(host, ctx):
    _prepared(ctx)
    host.ssh_ignores_config = True

    with pytest.raises(HardeningFailure) as exc:
        apply_hardening(ctx)

    assert not ctx.hardening.verified
    assert ctx.hardening.sshd_restarted
    assert "not listening on port 2222" in str(exc.value)
    assert any("cp /etc/ssh/sshd_config.backup.20261018_120000" in s for s in exc.value.recovery)
    # the operator's current port stays open
    assert "22/tcp" in [s for s, _ in host.ufw_rules]


def test_restart_failure_raises_hardening_failure(host, ctx):
    _prepared(ctx)
    host.ssh_restart_fails = True

    with pytest.raises(HardeningFailure, match="could not be restarted"):
        apply_hardening(ctx)

    assert host.ran("service", "ssh", "restart")
    assert ctx.hardening.sshd_restarted


def test_socket_activation_is_disabled(host, ctx):
    _prepared(ctx)
    host.services["ssh.socket"] = True
    host.enabled.add("ssh.socket")
    unit = host.path("/usr/lib/systemd/system/ssh.service")
    unit.parent.mkdir(parents=True)
    unit.write_text(SOCKET_UNIT)

    apply_hardening(ctx)

    assert host.ran("systemctl", "stop", "ssh.socket")
    assert host.ran("systemctl", "disable", "ssh.socket")
    override = host.path("/etc/systemd/system/ssh.service").read_text()
    assert "Requires=ssh.socket" not in override
    assert "ExecStart=/usr/sbin/sshd -D $SSHD_OPTS" in override
    assert host.ran("systemctl", "daemon-reload")


def test_stage_is_must_not_fail_and_previews_without_touching_the_host(host, make_ctx):
    ctx = make_ctx(dry_run=True)
    ctx.ports = ctx.registry().resolve(ctx.config.ports)
    ctx.previous_ssh_port = 22
    stage = ssh_hardening_stage(ctx)

    assert stage.criticality.value == "must-not-fail"
    preview = stage.dry_run_preview()
    assert preview.files == ["/etc/ssh/sshd_config"]
    assert preview.backups == ["/etc/ssh/sshd_config.backup.20261018_120000"]
    assert "systemctl restart ssh" in preview.commands
    assert any(c.startswith("ufw delete allow 22/tcp") for c in preview.commands)
    assert "Port 2222" in preview.summary
    assert host.path("/etc/ssh/sshd_config").read_text() == UBUNTU_SSHD_CONFIG
