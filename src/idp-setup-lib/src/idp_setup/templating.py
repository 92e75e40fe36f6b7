"""
idp_setup.templating — Placeholder rewrites for the forked repository and
selective variable substitution for the deployment values file.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

_VAR_NAME = r"[A-Za-z_][A-Za-z0-9_]*"
_VAR_RE = re.compile(r"\$(?:\{(" + _VAR_NAME + r")\}|(" + _VAR_NAME + r"))")

DEPLOYMENT_VARIABLES: tuple[str, ...] = (
    "ECR_REGISTRY",
    "ECR_REPOSITORY",
    "BACKSTAGE_TAG",
    "GITHUB_ORG",
    "ORGANIZATION_NAME",
    "SCAFFOLDER_EMAIL",
    "BASE_URL",
)


def substitute(text: str, values: Mapping[str, str], allowed: Iterable[str]) -> str:
    """envsubst with an allow-list: $VAR / ${VAR} outside the list is left literal."""
    allow = frozenset(allowed)

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        if name in allow and name in values:
            return values[name]
        return match.group(0)

    return _VAR_RE.sub(_replace, text)


@dataclass(frozen=True)
class RewriteRule:
    pattern: str
    replacements: tuple[tuple[str, str], ...]


def fork_rewrite_rules(
    *,
    org: str,
    repo: str,
    state_bucket: str,
    region: str,
    account_id: str,
    lock_table: str | None,
) -> list[RewriteRule]:
    backend_config: list[tuple[str, str]] = [
        ("YOUR_TERRAFORM_STATE_BUCKET", state_bucket),
        ("YOUR_AWS_REGION", region),
    ]
    if lock_table:
        backend_config += [
            ('# dynamodb_table = "terraform-state-lock"', f'dynamodb_table = "{lock_table}"'),
            ('#dynamodb_table = "terraform-state-lock"', f'dynamodb_table = "{lock_table}"'),
        ]
    return [
        RewriteRule(
            "backstage-templates/**/*.yaml",
            (
                ("${GITHUB_ORG}", org),
                ("YOUR_GITHUB_ORG", org),
                ("your-github-org", org),
                ("${GITHUB_REPO}", repo),
            ),
        ),
        RewriteRule(
            "backstage-setup/templates/helm-values.yaml",
            (("${GITHUB_REPO}", repo), ("${GITHUB_ORG}", org)),
        ),
        RewriteRule(
            "terraform/*/backend.tf",
            (
                ("YOUR_ORG-terraform-state", state_bucket),
                ("your-org-terraform-state", state_bucket),
                ("us-east-1", region),
            ),
        ),
        RewriteRule("backstage-templates/**/backend.config", tuple(backend_config)),
        RewriteRule(
            ".github/workflows/terraform-apply.yml",
            (("YOUR_AWS_REGION", region), ("YOUR_ACCOUNT_ID", account_id)),
        ),
    ]


def apply_rewrites(root: Path, rules: Iterable[RewriteRule]) -> dict[str, int]:
    """Apply rules under root. Returns {relative path: replacement count} for changed files."""
    changed: dict[str, int] = {}
    for rule in rules:
        for path in sorted(root.glob(rule.pattern)):
            if not path.is_file():
                continue
            original = path.read_text(encoding="utf-8")
            text = original
            count = 0
            for old, new in rule.replacements:
                count += text.count(old)
                text = text.replace(old, new)
            if text != original:
                rel = path.relative_to(root).as_posix()
                path.write_text(text, encoding="utf-8")
                changed[rel] = changed.get(rel, 0) + count
    return changed


def render_values(template: Path, values: Mapping[str, str], destination: Path) -> Path:
    text = substitute(template.read_text(encoding="utf-8"), values, DEPLOYMENT_VARIABLES)
    destination.write_text(text, encoding="utf-8")
    return destination
