from serverforge.deploy import recovery


def test_hardening_steps_include_restore_only_with_a_backup():
    with_backup = recovery.hardening_failed(2222, "/etc/ssh/sshd_config", "/etc/ssh/sshd_config.backup.x")
    without = recovery.hardening_failed(2222, "/etc/ssh/sshd_config", None)

    assert "Restore the previous configuration: cp /etc/ssh/sshd_config.backup.x /etc/ssh/sshd_config" in with_backup
    assert not any(s.startswith("Restore") for s in without)
    assert any("':2222 '" in s for s in without)


def test_validation_steps_follow_the_failure():
    steps = recovery.validation("insufficient disk space on / (1 MiB free, 5 GiB required)")
    assert steps[0] == "No changes were made to this host"
    assert any("df -h /" in s for s in steps)
    assert not any("free -m" in s for s in steps)


def test_generic_points_at_bundle_and_log():
    steps = recovery.generic("/var/log/serverforge/setup.log", "/root/server-setup-x.error")
    assert steps[0] == "Read the diagnostics: less /root/server-setup-x.error"
    assert steps[1] == "Full command trace: less /var/log/serverforge/setup.log"
    assert recovery.admin_access(None)[0] == "Verify the account: id <admin>"
