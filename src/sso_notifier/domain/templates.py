"""
SSO Hub Notifier - Template Engine.

Renders stored templates plus a variable map into channel content using
Jinja2 with strict undefined handling. Compiled templates are cached by
name with a bounded TTL; writers must call clear_cache() or invalidate().

Architecture Layer: Domain
Principles: Deterministic Rendering, Fail-Fast Validation, Explicit Cache Invalidation
"""
from __future__ import annotations

import re
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import UUID

from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateSyntaxError, UndefinedError, meta
from jinja2 import Template as JinjaTemplate
from jinja2 import TemplateError as JinjaTemplateError
from pydantic import BaseModel
import structlog

from ..clock import Clock, SystemClock
from ..exceptions import MissingVariable, TemplateSyntaxInvalid, UnknownTemplate, UnsupportedChannel
from .entities import ChannelKind, Template

logger = structlog.get_logger(__name__)

_UNDEFINED_NAME = re.compile(r"'([^']+)' is undefined")

TEST_VARIABLES: dict[str, Any] = {
    "test_mode": True,
    "user_id": "test-user-123",
    "service_name": "test-service",
    "tool_name": "github",
    "environment": "test",
}


class TemplateSource(Protocol):
    """Read side of the notification store used for template lookup."""

    async def get_template(self, template_id: UUID) -> Template | None: ...

    async def get_template_by_name(self, name: str) -> Template | None: ...


class RenderedContent(BaseModel):
    """Channel-ready content."""
    subject: str
    body: str
    html: str | None = None


@dataclass
class _CompiledTemplate:
    template: Template
    subject: JinjaTemplate
    body: JinjaTemplate
    html: JinjaTemplate | None
    loaded_at: datetime


class TemplateEngine:
    """
    Jinja2-based template rendering engine.

    Rendering never injects timestamps or other ambient values, so the same
    template and variables always yield byte-identical output.
    """

    def __init__(
        self,
        source: TemplateSource,
        *,
        cache_enabled: bool = True,
        cache_ttl_seconds: int = 3600,
        cache_max_entries: int = 500,
        clock: Clock | None = None,
    ) -> None:
        self._source = source
        self._cache_enabled = cache_enabled
        self._ttl = timedelta(seconds=cache_ttl_seconds)
        self._max_entries = cache_max_entries
        self._clock = clock or SystemClock()
        self._text_env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        self._html_env = Environment(
            loader=BaseLoader(),
            autoescape=True,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        self._cache: OrderedDict[str, _CompiledTemplate] = OrderedDict()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "invalidations": 0}
        logger.info("template_engine_initialized", cache_enabled=cache_enabled,
                    cache_ttl_seconds=cache_ttl_seconds)

    async def get_template(self, template_ref: str) -> Template:
        """Resolve a template by id or name. Disabled templates count as unknown."""
        return (await self._load(template_ref)).template

    async def render(
        self,
        template_ref: str,
        variables: dict[str, Any],
        channel: ChannelKind | None = None,
    ) -> RenderedContent:
        """
        Render a template by id or name.

        Raises:
            UnknownTemplate: no matching enabled template
            UnsupportedChannel: channel is outside the template's supported set
            MissingVariable: a declared or referenced variable is absent
        """
        compiled = await self._load(template_ref)
        return self._render_compiled(compiled, variables, channel)

    def render_template(
        self,
        template: Template,
        variables: dict[str, Any],
        channel: ChannelKind | None = None,
    ) -> RenderedContent:
        """Render a template object directly, bypassing the cache."""
        return self._render_compiled(self._compile(template), variables, channel)

    def validate_template(self, template: Template) -> list[str]:
        """Return a list of problems; empty means the template is usable."""
        errors: list[str] = []
        for field, source in self._sources(template):
            try:
                self._env_for(field).parse(source)
            except TemplateSyntaxError as e:
                errors.append(f"{field}: {e.message} (line {e.lineno})")
        undeclared = self.referenced_variables(template) - set(template.variables) if not errors else set()
        if template.variables and undeclared:
            errors.append(f"variables used but not declared: {sorted(undeclared)}")
        return errors

    def referenced_variables(self, template: Template) -> set[str]:
        names: set[str] = set()
        for field, source in self._sources(template):
            names |= meta.find_undeclared_variables(self._env_for(field).parse(source))
        return names

    async def test_template(self, template_ref: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Dry-run rendering with test defaults merged under the supplied variables."""
        compiled = await self._load(template_ref)
        template = compiled.template
        merged = {**TEST_VARIABLES, **variables}
        try:
            rendered = self._render_compiled(compiled, merged, None)
        except (MissingVariable, TemplateSyntaxInvalid) as e:
            logger.info("template_test_failed", template=template.name, error=e.message)
            return {
                "success": False,
                "template_id": str(template.template_id),
                "template_name": template.name,
                "error": e.message,
                "code": e.error_code,
            }
        return {
            "success": True,
            "template_id": str(template.template_id),
            "template_name": template.name,
            "rendered": rendered.model_dump(),
            "variables_used": template.variables,
            "supported_channels": [c.value for c in template.supported_channels],
        }

    def clear_cache(self) -> None:
        self._cache.clear()
        self._stats["invalidations"] += 1
        logger.info("template_cache_cleared")

    def invalidate(self, template_ref: str) -> None:
        """Drop every cache entry for a template, addressed by id or name."""
        doomed = [
            key for key, entry in self._cache.items()
            if key == template_ref.lower()
            or entry.template.name.lower() == template_ref.lower()
            or str(entry.template.template_id) == template_ref
        ]
        for key in doomed:
            del self._cache[key]
        self._stats["invalidations"] += 1
        logger.debug("template_cache_invalidated", template=template_ref, entries=len(doomed))

    def cache_stats(self) -> dict[str, Any]:
        return {
            "enabled": self._cache_enabled,
            "size": len(self._cache),
            "max_entries": self._max_entries,
            "ttl_seconds": int(self._ttl.total_seconds()),
            **self._stats,
        }

    async def _load(self, template_ref: str) -> _CompiledTemplate:
        key = template_ref.lower()
        now = self._clock.now()
        if self._cache_enabled:
            entry = self._cache.get(key)
            if entry is not None and now - entry.loaded_at < self._ttl:
                self._stats["hits"] += 1
                return entry
            if entry is not None:
                del self._cache[key]
        self._stats["misses"] += 1

        template = await self._fetch(template_ref)
        if template is None or not template.enabled:
            logger.warning("template_not_found", template=template_ref)
            raise UnknownTemplate(template_ref)

        compiled = self._compile(template, loaded_at=now)
        if self._cache_enabled:
            self._cache[key] = compiled
            while len(self._cache) > self._max_entries:
                self._cache.popitem(last=False)
                self._stats["evictions"] += 1
        return compiled

    async def _fetch(self, template_ref: str) -> Template | None:
        try:
            template_id = UUID(template_ref)
        except ValueError:
            return await self._source.get_template_by_name(template_ref)
        return await self._source.get_template(template_id)

    def _compile(self, template: Template, loaded_at: datetime | None = None) -> _CompiledTemplate:
        try:
            return _CompiledTemplate(
                template=template,
                subject=self._text_env.from_string(template.subject_template),
                body=self._text_env.from_string(template.body_template),
                html=self._html_env.from_string(template.html_template) if template.html_template else None,
                loaded_at=loaded_at or self._clock.now(),
            )
        except TemplateSyntaxError as e:
            logger.error("template_compile_failed", template=template.name, error=str(e))
            raise TemplateSyntaxInvalid([f"{e.message} (line {e.lineno})"]) from e

    def _render_compiled(
        self,
        compiled: _CompiledTemplate,
        variables: dict[str, Any],
        channel: ChannelKind | None,
    ) -> RenderedContent:
        template = compiled.template
        if channel is not None and not template.supports(channel):
            raise UnsupportedChannel(
                channel.value,
                f"Template '{template.name}' does not support channel '{channel.value}'",
            )

        missing = [name for name in template.variables if variables.get(name) is None]
        if missing:
            logger.warning("template_missing_variables", template=template.name, missing=missing)
            raise MissingVariable(template.name, missing)

        try:
            subject = compiled.subject.render(**variables)
            body = compiled.body.render(**variables)
            html = compiled.html.render(**variables) if compiled.html is not None else None
        except UndefinedError as e:
            match = _UNDEFINED_NAME.search(str(e))
            raise MissingVariable(template.name, [match.group(1) if match else str(e)]) from e
        except JinjaTemplateError as e:
            logger.error("template_render_failed", template=template.name, error=str(e))
            raise TemplateSyntaxInvalid([str(e)]) from e

        logger.debug("template_rendered", template=template.name, channel=channel.value if channel else None)
        return RenderedContent(subject=subject.strip(), body=body, html=html)

    @staticmethod
    def _sources(template: Template) -> list[tuple[str, str]]:
        sources = [("subject", template.subject_template), ("body", template.body_template)]
        if template.html_template:
            sources.append(("html", template.html_template))
        return sources

    def _env_for(self, field: str) -> Environment:
        return self._html_env if field == "html" else self._text_env
