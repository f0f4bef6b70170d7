"""Metric template loading with validation.

A template is a single file under the template directory, named exactly
like the entry in the Deployment's template annotation. Its content is a
YAML (or JSON) mapping that decodes into one autoscaler metric, e.g.::

    type: Resource
    resource:
      name: cpu
      target:
        type: Utilization
        averageUtilization: 70

SECURITY: Template names come from user-controlled annotations, so names
are confined to the template directory and file sizes are bounded.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_TEMPLATE_FILE_SIZE_BYTES
from .models import MetricSpec

logger = logging.getLogger(__name__)


class TemplateLoadError(Exception):
    """Raised when a metric template cannot be read or decoded."""

    pass


def split_template_names(value: str | None) -> list[str]:
    """Split a comma-separated template annotation into names.

    Whitespace around names is trimmed and empty entries are dropped, so
    ``"cpu70, ,mem"`` yields ``["cpu70", "mem"]``.
    """
    if not value:
        return []
    return [name.strip() for name in value.split(",") if name.strip()]


class TemplateResolver:
    """Resolves template names to metric specifications."""

    def __init__(
        self, templates_dir: Path, max_size_bytes: int = MAX_TEMPLATE_FILE_SIZE_BYTES
    ) -> None:
        self._templates_dir = templates_dir
        self._max_size_bytes = max_size_bytes

    @property
    def templates_dir(self) -> Path:
        return self._templates_dir

    def _template_path(self, name: str) -> Path:
        if not name or name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
            raise TemplateLoadError(f"Invalid template name: {name!r}")
        return self._templates_dir / name

    def resolve(self, name: str) -> MetricSpec:
        """Load and validate the metric template called ``name``.

        Raises:
            TemplateLoadError: If the template is missing, too large or malformed.
        """
        template_path = self._template_path(name)

        if not template_path.is_file():
            raise TemplateLoadError(f"Template file not found: {template_path}")

        # SECURITY: Check file size before reading
        try:
            file_size = template_path.stat().st_size
        except OSError as e:
            raise TemplateLoadError(f"Failed to stat template file {template_path}: {e}") from e

        if file_size > self._max_size_bytes:
            raise TemplateLoadError(
                f"Template file exceeds maximum size of {self._max_size_bytes} bytes: "
                f"{template_path}"
            )

        try:
            content = template_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise TemplateLoadError(f"Failed to read template file {template_path}: {e}") from e

        try:
            raw_data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise TemplateLoadError(f"Invalid YAML in {template_path}: {e}") from e

        if not isinstance(raw_data, dict):
            raise TemplateLoadError(f"Template must contain a YAML mapping: {template_path}")

        try:
            metric = MetricSpec.model_validate(raw_data)
        except ValidationError as e:
            errors = []
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"]) or "<root>"
                errors.append(f"  - {loc}: {error['msg']}")
            error_list = "\n".join(errors)
            raise TemplateLoadError(f"Validation failed for {template_path}:\n{error_list}") from e

        logger.debug("Loaded metric template '%s' from %s", name, template_path)
        return metric

    def resolve_all(self, names: list[str]) -> list[MetricSpec]:
        """Resolve each name, skipping (and logging) the ones that fail.

        Order of the returned metrics follows the order of ``names``.
        """
        metrics: list[MetricSpec] = []
        for name in names:
            try:
                metrics.append(self.resolve(name))
            except TemplateLoadError as e:
                logger.error(
                    "Can not load metric template, skipping",
                    extra={"template": name, "error": str(e)},
                )
        return metrics

    def available(self) -> list[str]:
        """List template names present in the template directory."""
        return sorted(
            path.name
            for path in self._templates_dir.iterdir()
            if path.is_file() and not path.name.startswith(".")
        )
