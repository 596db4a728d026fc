from conftest import make_config

from serverforge.deploy.catalog import STAGE_FACTORIES, build_stages
from serverforge.deploy.stages import STAGE_ORDER, TERMINAL_STAGES, Criticality, StageName


def _stages(ctx):
    ctx.ports = ctx.registry().resolve(ctx.config.ports)
    return build_stages(ctx)


def test_every_stage_has_a_factory():
    assert set(STAGE_FACTORIES) == set(StageName)


def test_stages_follow_the_fixed_order(ctx):
    names = [s.name for s in _stages(ctx)]
    assert names == list(STAGE_ORDER)
    assert names[-1] is StageName.SSH_HARDENING
    assert names.index(StageName.ADMIN_USERS) < names.index(StageName.FIREWALL) < names.index(StageName.REPORT)
    assert TERMINAL_STAGES == (StageName.REPORT, StageName.SSH_HARDENING)


def test_criticality(ctx):
    by_name = {s.name: s for s in _stages(ctx)}
    must = {n for n, s in by_name.items() if s.criticality is Criticality.MUST_NOT_FAIL}
    assert must == {
        StageName.SYSTEM_UPDATE,
        StageName.CONTAINER_RUNTIME,
        StageName.INTRUSION_PREVENTION,
        StageName.ADMIN_USERS,
        StageName.FIREWALL,
        StageName.SSH_HARDENING,
    }


def test_platform_selects_container_runtime(make_ctx):
    k3s = {s.name: s for s in _stages(make_ctx())}
    swarm = {s.name: s for s in _stages(make_ctx(make_config(platform="swarm")))}
    assert "k3s" in k3s[StageName.CONTAINER_RUNTIME].description
    assert "Swarm" in swarm[StageName.CONTAINER_RUNTIME].description


def test_building_stages_changes_nothing(host, ctx):
    _stages(ctx)
    assert not host.ran("apt-get")
    assert not host.ran("useradd")
    assert not host.ran("ufw")
