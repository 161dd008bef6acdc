"""
Configuration loader.

Loads the YAML files that tune a deployment without code changes:

    plans.yaml            - per-plan entity limits for each resource type
    email_templates.yaml  - overrides / disables for notification templates

plans.yaml looks like:

    default_plan: free
    plans:
      free:
        notes: 3
      pro:
        notes: 100
      enterprise:
        notes: null      # unbounded
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from saaslib.config import Settings
from saaslib.integrations.email import DEFAULT_TEMPLATES, EmailTemplate
from saaslib.ownership.policy import QuotaFunction, plan_quota

logger = logging.getLogger(__name__)


class PlanCatalog(BaseModel):
    """Entity limits per plan, keyed by resource name."""

    default_plan: str = "free"
    plans: dict[str, dict[str, int | None]] = Field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PlanCatalog":
        return cls.model_validate(data or {})

    def limits_for(self, resource: str) -> dict[str, int | None]:
        """plan -> maximum for one resource type. Plans not naming it are unbounded."""
        return {plan: limits.get(resource) for plan, limits in self.plans.items()}

    def quota_for(self, resource: str) -> QuotaFunction:
        """
        Quota function for OwnershipPolicy.max_entities.

        Unknown plans fall back to the default plan's limit (0 if the
        default plan is not listed either).
        """
        limits = self.limits_for(resource)
        default = limits[self.default_plan] if self.default_plan in limits else 0
        return plan_quota(limits, default=default)


def _read_yaml(path: Path | str) -> Any:
    path = Path(path)
    with open(path) as f:
        return yaml.safe_load(f)


class ConfigLoader:
    """
    Loads plan and email template configuration.

    Paths come from settings; missing settings mean built-in defaults.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def load_plans(self, path: Path | str | None = None) -> PlanCatalog:
        path = path or self.settings.plans_file
        if not path:
            return PlanCatalog()
        catalog = PlanCatalog.from_dict(_read_yaml(path))
        logger.info(f"Loaded {len(catalog.plans)} plans from {path}")
        return catalog

    def load_email_templates(self, path: Path | str | None = None) -> dict[str, EmailTemplate]:
        """
        Load template overrides.

        An entry may replace subject/html, or just set ``disabled: true``
        to switch a built-in template off.
        """
        path = path or self.settings.email_templates_file
        if not path:
            return {}

        data = _read_yaml(path) or {}
        templates: dict[str, EmailTemplate] = {}
        for name, override in (data.get("templates") or {}).items():
            base = DEFAULT_TEMPLATES.get(name)
            merged = {**(base.model_dump() if base else {}), **(override or {})}
            templates[name] = EmailTemplate.model_validate(merged)
        logger.info(f"Loaded {len(templates)} email template overrides from {path}")
        return templates
