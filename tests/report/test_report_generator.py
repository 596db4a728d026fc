import re

from conftest import RECOVERY_KEY, make_config

from serverforge.deploy.context import HardeningOutcome
from serverforge.deploy.executor import StepResult, StepStatus
from serverforge.report.generator import ReportGenerator, report_stage


def _resolved(ctx):
    ctx.ports = ctx.registry().resolve(ctx.config.ports)
    return ctx


def test_render_lists_ports_connection_and_settings(host, ctx):
    text = ReportGenerator(_resolved(ctx)).render()

    assert "Server setup report: testhost" in text
    # ports are sorted by number
    assert text.index("2222") < text.index("16443")
    assert re.search(r"k3s_api\s+16443\s+k3s Kubernetes API\n", text)
    assert "ssh -p 2222 deploy@203.0.113.10" in text
    assert "sudo -i" in text
    # current sshd_config has nothing for these yet
    assert "PermitRootLogin (default)" in text
    assert "PasswordAuthentication yes" in text
    assert "ufw inactive or not installed" in text
    assert "sudo: (none)" in text
    assert "fail2ban-client status sshd" in text


def test_privileged_ports_are_flagged(make_ctx):
    ctx = _resolved(make_ctx(make_config(ports={"ssh": 22})))
    assert re.search(r"ssh\s+22\s+SSH \(privileged\)", ReportGenerator(ctx).render())


def test_service_table_and_users(host, ctx):
    host.services["nginx"] = True
    host.users["deploy"] = {"uid": 1000}
    host.groups["sudo"].append("deploy")

    generator = ReportGenerator(_resolved(ctx))
    services = {s.name: s for s in generator.services()}
    assert services["sshd"].active and services["sshd"].unit == "ssh"
    assert services["nginx"].active
    assert not services["k3s"].active

    text = generator.render()
    assert re.search(r"sshd\s+active \(ssh\)\n", text)
    assert re.search(r"k3s\s+inactive\n", text)
    assert re.search(r"deploy\s+uid=1000 shell=/bin/bash", text)
    assert "root " not in text.split("USERS")[1].split("STAGES")[0]
    assert "sudo: deploy" in text


def test_critical_banner_when_ssh_is_down(host, ctx):
    host.services["ssh"] = False
    text = ReportGenerator(_resolved(ctx)).render()
    assert "!!! CRITICAL: SSH IS NOT RUNNING !!!" in text
    assert "systemctl start ssh" in text


def test_hardening_states(ctx):
    generator = ReportGenerator(_resolved(ctx))
    assert generator.hardening().startswith("pending")

    ctx.results.append(StepResult("ssh_hardening", True, StepStatus.ALREADY_CONFIGURED))
    assert generator.hardening() == "already hardened, listening on port 2222"

    ctx.hardening = HardeningOutcome(port=2222, verified=False, error="SSH is not listening on port 2222")
    assert generator.hardening() == "FAILED: SSH is not listening on port 2222"

    ctx.hardening = HardeningOutcome(port=2222, verified=True, service_unit="ssh", banner="SSH-2.0-OpenSSH_9.6")
    assert generator.hardening() == "verified: ssh listening on port 2222, banner SSH-2.0-OpenSSH_9.6"


def test_stage_results_and_warnings_are_reported(ctx):
    _resolved(ctx)
    ctx.results.append(StepResult("ssl_certificates", False, StepStatus.FAILED, error="example.com does not resolve"))
    ctx.warnings.append("sshguard is not active")

    text = ReportGenerator(ctx).render()
    assert re.search(r"ssl_certificates\s+FAILED: example.com does not resolve\n", text)
    assert "WARNINGS" in text
    assert "! sshguard is not active" in text


def test_recovery_admin_and_certificate(host, make_ctx):
    cfg = make_config(
        recovery={"ssh_keys": [RECOVERY_KEY]},
        certbot={"email": "ops@example.com", "domain": "example.com"},
    )
    ctx = _resolved(make_ctx(cfg))
    generator = ReportGenerator(ctx)
    assert generator.certificate() == "NOT issued for example.com"

    live = host.path("/etc/letsencrypt/live/example.com/fullchain.pem")
    live.parent.mkdir(parents=True)
    live.write_text("cert")
    assert generator.certificate() == "issued for example.com"
    assert "Recovery: ssh -p 2222 recovery_admin@203.0.113.10" in generator.render()


def test_write_is_mode_0600_under_report_dir(host, ctx):
    path = ReportGenerator(_resolved(ctx)).write()
    assert path == host.path("/root/server-setup-20261018_120000.report")
    assert (path.stat().st_mode & 0o777) == 0o600
    assert ctx.report_path == path


def test_report_stage_always_writes(host, make_ctx):
    ctx = _resolved(make_ctx(dry_run=True))
    stage = report_stage(ctx)
    assert stage.idempotent_check is None
    assert stage.dry_run_preview().files == ["/root/server-setup-20261018_120000.report"]
