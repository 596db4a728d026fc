from conftest import make_config

from serverforge.components.firewall import (
    TRANSITION_COMMENT,
    desired_rules,
    firewall_stage,
    remove_transition_rule,
    transition_rule,
)


def _resolved(ctx, previous=22):
    ctx.ports = ctx.registry().resolve(ctx.config.ports)
    ctx.previous_ssh_port = previous
    return ctx


def test_ssh_rule_comes_first_and_transition_rule_follows(ctx):
    rules = desired_rules(_resolved(ctx))
    assert rules[0].spec == "2222/tcp"
    assert rules[1].comment == TRANSITION_COMMENT
    assert rules[1].spec == "22/tcp"
    specs = [r.spec for r in rules]
    assert "16443/tcp" in specs
    assert "8472/udp" in specs
    assert "80/tcp" in specs and "443/tcp" in specs


def test_no_transition_rule_when_port_is_unchanged(ctx):
    _resolved(ctx, previous=2222)
    assert transition_rule(ctx) is None


def test_swarm_rules_include_docker_bridge(make_ctx):
    ctx = _resolved(make_ctx(make_config(platform="swarm", nginx=False)))
    specs = [r.spec for r in desired_rules(ctx)]
    assert "2377/tcp" in specs
    assert "4789/udp" in specs
    assert "in on docker0" in specs
    assert "80/tcp" not in specs
    assert "16443/tcp" not in specs


def test_stage_opens_ssh_before_enabling(host, ctx):
    stage = firewall_stage(_resolved(ctx))
    assert not stage.idempotent_check()

    stage.action()

    cmds = [" ".join(c) for c in host.commands]
    enable = cmds.index("ufw --force enable")
    assert cmds.index("ufw allow 2222/tcp comment SSH") < enable
    assert cmds.index(f"ufw allow 22/tcp comment {TRANSITION_COMMENT}") < enable
    assert cmds.index("ufw default deny incoming") < enable
    assert host.ufw_active
    assert stage.idempotent_check()


def test_stage_only_adds_missing_rules(host, ctx):
    host.binaries.add("ufw")
    host.packages.add("ufw")
    host.ufw_active = True
    host.ufw_defaults = ("deny", "allow")
    host.ufw_rules.append(("2222/tcp", "SSH"))

    firewall_stage(_resolved(ctx)).action()

    assert host.count("ufw", "allow", "2222/tcp") == 0
    assert host.ran("ufw", "allow", "16443/tcp")
    assert not host.ran("ufw", "--force", "enable")


def test_remove_transition_rule(host, ctx):
    firewall_stage(_resolved(ctx)).action()
    assert remove_transition_rule(ctx)
    assert host.ran("ufw", "delete", "allow", "22/tcp")
    assert "22/tcp" not in [s for s, _ in host.ufw_rules]
    # already gone
    assert not remove_transition_rule(ctx)
