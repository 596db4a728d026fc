# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/components/proxy.py

from __future__ import annotations

import logging
import os

from serverforge.deploy.errors import ProvisioningError
from serverforge.deploy.stages import Criticality, ProvisioningStage, StageName, StagePreview

from .common import (
    apt_install,
    file_matches,
    install_commands,
    missing_packages,
    restart_service,
    run,
    write_config,
)
from .template_renderer import render

log = logging.getLogger("serverforge")

SITES_AVAILABLE = "/etc/nginx/sites-available"
SITES_ENABLED = "/etc/nginx/sites-enabled"
ROUTER_SITE = f"{SITES_AVAILABLE}/container-router"
ROUTER_LINK = f"{SITES_ENABLED}/container-router"
DEFAULT_LINK = f"{SITES_ENABLED}/default"
LANDING_PAGE = "/var/www/html/index.html"
RENEWAL_HOOK = "/etc/letsencrypt/renewal-hooks/deploy/reload-nginx"


def _link_ok(ctx, link: str, target: str) -> bool:
    p = ctx.host_path(link)
    return p.is_symlink() and os.readlink(p) == str(ctx.host_path(target))


def _ensure_link(ctx, link: str, target: str) -> None:
    p = ctx.host_path(link)
    if _link_ok(ctx, link, target):
        return
    p.parent.mkdir(parents=True, exist_ok=True)
    if p.is_symlink() or p.exists():
        p.unlink()
    p.symlink_to(ctx.host_path(target))
    log.info(f"Enabled {link}")


def _nginx_test(ctx) -> None:
    run(ctx, ["nginx", "-t"], message="nginx configuration test failed")


# ---------------------------------------------------------------------
# reverse_proxy
# ---------------------------------------------------------------------
def reverse_proxy_stage(ctx) -> ProvisioningStage:
    files = {
        ROUTER_SITE: render("nginx-container-router.j2"),
        LANDING_PAGE: render("index.html.j2", hostname=ctx.hostname),
    }

    def check() -> bool:
        return (
            not missing_packages(ctx, ["nginx"])
            and all(file_matches(ctx, p, c) for p, c in files.items())
            and _link_ok(ctx, ROUTER_LINK, ROUTER_SITE)
            and not ctx.host_path(DEFAULT_LINK).is_symlink()
            and not ctx.host_path(DEFAULT_LINK).exists()
            and ctx.probe.service_active("nginx")
        )

    def action() -> str:
        apt_install(ctx, ["nginx"])
        for path, content in files.items():
            write_config(ctx, path, content)
        default = ctx.host_path(DEFAULT_LINK)
        if default.is_symlink() or default.exists():
            default.unlink()
            log.info(f"Disabled {DEFAULT_LINK}")
        _ensure_link(ctx, ROUTER_LINK, ROUTER_SITE)
        _nginx_test(ctx)
        restart_service(ctx, "nginx")
        return "nginx container router on port 80 (/health)"

    def preview() -> StagePreview:
        return StagePreview(
            "Install nginx with the container-router site",
            files=[*files, ROUTER_LINK],
            removed=[DEFAULT_LINK],
            services=["nginx"],
            commands=install_commands(ctx, ["nginx"]) + ["nginx -t"],
        )

    return ProvisioningStage(
        StageName.REVERSE_PROXY,
        "Reverse proxy (nginx)",
        action,
        preview,
        check,
        Criticality.NORMAL,
        enabled=ctx.config.nginx,
        skip_reason="" if ctx.config.nginx else "reverse proxy disabled",
        retryable=True,
    )


# ---------------------------------------------------------------------
# ssl_certificates
# ---------------------------------------------------------------------
def _resolve(ctx, domain: str) -> str | None:
    res = ctx.runner.run(["dig", "+short", domain])
    answers = [l.strip() for l in res.stdout.splitlines() if l.strip()] if res.ok else []
    return answers[0] if answers else None


def ssl_certificates_stage(ctx) -> ProvisioningStage:
    certbot = ctx.config.certbot
    domain = certbot.domain or ""
    site = f"{SITES_AVAILABLE}/{domain}"
    link = f"{SITES_ENABLED}/{domain}"
    fullchain = f"/etc/letsencrypt/live/{domain}/fullchain.pem"
    hook = render("certbot-reload-nginx.j2")
    site_content = render("nginx-domain.j2", domain=domain) if domain else ""

    def check() -> bool:
        return (
            ctx.host_path(fullchain).is_file()
            and file_matches(ctx, RENEWAL_HOOK, hook, 0o755)
            and ctx.probe.service_enabled("certbot.timer")
        )

    def action() -> str:
        apt_install(ctx, ["certbot", "python3-certbot-nginx"])

        host_ips = ctx.probe.host_ips()
        resolved = _resolve(ctx, domain)
        manual = f"sudo certbot --nginx -d {domain} --email {certbot.email}"
        if resolved is None:
            raise ProvisioningError(
                f"{domain} does not resolve to any address",
                recovery=[f"point DNS for {domain} at {host_ips[0] if host_ips else 'this host'}", manual],
            )
        if resolved not in host_ips:
            raise ProvisioningError(
                f"{domain} resolves to {resolved}, not to this host ({', '.join(host_ips) or 'unknown'})",
                recovery=["update the DNS record, then run:", manual],
            )

        if not ctx.probe.service_active("nginx"):
            run(ctx, ["systemctl", "start", "nginx"])
        if not ctx.host_path(fullchain).is_file():
            # certbot --nginx rewrites this site, so only seed it before the first certificate
            write_config(ctx, site, site_content)
            _ensure_link(ctx, link, site)
            _nginx_test(ctx)
            run(ctx, ["systemctl", "reload", "nginx"])
            run(ctx, [
                "certbot", "--nginx", "-d", domain, "--email", certbot.email,
                "--agree-tos", "--non-interactive", "--redirect",
            ])

        write_config(ctx, RENEWAL_HOOK, hook, mode=0o755)
        run(ctx, ["systemctl", "enable", "certbot.timer"])
        run(ctx, ["systemctl", "start", "certbot.timer"])
        return f"certificate for {domain}, renewal via certbot.timer"

    def preview() -> StagePreview:
        return StagePreview(
            f"Obtain a Let's Encrypt certificate for {domain} (DNS must point at this host)",
            files=[site, link, RENEWAL_HOOK],
            services=["nginx", "certbot.timer"],
            commands=install_commands(ctx, ["certbot", "python3-certbot-nginx"]) + [
                f"dig +short {domain}",
                f"certbot --nginx -d {domain} --email {certbot.email} --agree-tos --non-interactive --redirect",
            ],
        )

    enabled = certbot.enabled and ctx.config.nginx
    if not certbot.enabled:
        reason = "no certbot email/domain configured"
    elif not ctx.config.nginx:
        reason = "certbot --nginx needs the reverse proxy"
    else:
        reason = ""

    return ProvisioningStage(
        StageName.SSL_CERTIFICATES,
        "SSL certificates (certbot)",
        action,
        preview,
        check,
        Criticality.NORMAL,
        enabled=enabled,
        skip_reason=reason,
    )
