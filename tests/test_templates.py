"""
Unit tests for the template engine.
"""
import pytest

from sso_notifier.domain.entities import ChannelKind, Template
from sso_notifier.domain.templates import TemplateEngine
from sso_notifier.exceptions import MissingVariable, TemplateSyntaxInvalid, UnknownTemplate, UnsupportedChannel
from sso_notifier.infrastructure.store import InMemoryNotificationStore


def tool_down_template(**overrides):
    data = {
        "name": "tool_down",
        "type": "tool_health",
        "subject_template": "{{ tool_name }} is down",
        "body_template": "Hello {{ user_name }}, {{ tool_name }} stopped responding.",
        "html_template": "<p>{{ tool_name }} &mdash; {{ user_name }}</p>",
        "variables": ["tool_name", "user_name"],
        "supported_channels": [ChannelKind.EMAIL, ChannelKind.SLACK],
    }
    data.update(overrides)
    return Template(**data)


@pytest.fixture
def template_store():
    return InMemoryNotificationStore()


@pytest.fixture
def engine(template_store, clock):
    return TemplateEngine(template_store, cache_ttl_seconds=60, cache_max_entries=2, clock=clock)


class TestRendering:
    """Tests for rendering stored templates."""

    @pytest.mark.asyncio
    async def test_render_by_name(self, engine, template_store):
        """Test rendering a template by name."""
        await template_store.create_template(tool_down_template())

        content = await engine.render("tool_down", {"tool_name": "Jira", "user_name": "Ada"})

        assert content.subject == "Jira is down"
        assert content.body == "Hello Ada, Jira stopped responding."
        assert content.html == "<p>Jira &mdash; Ada</p>"

    @pytest.mark.asyncio
    async def test_render_by_id(self, engine, template_store):
        """Test rendering a template by id."""
        template = await template_store.create_template(tool_down_template())

        content = await engine.render(str(template.template_id), {"tool_name": "Jira", "user_name": "Ada"})

        assert content.subject == "Jira is down"

    @pytest.mark.asyncio
    async def test_render_is_deterministic(self, engine, template_store):
        """Test the same template and variables render identically."""
        await template_store.create_template(tool_down_template())
        variables = {"tool_name": "GitLab", "user_name": "Lin"}

        first = await engine.render("tool_down", variables)
        engine.clear_cache()
        second = await engine.render("tool_down", variables)

        assert first == second

    @pytest.mark.asyncio
    async def test_html_is_escaped(self, engine, template_store):
        """Test variables are escaped in the HTML body only."""
        await template_store.create_template(tool_down_template())

        content = await engine.render("tool_down", {"tool_name": "<b>x</b>", "user_name": "Ada"})

        assert content.subject == "<b>x</b> is down"
        assert "&lt;b&gt;x&lt;/b&gt;" in content.html

    @pytest.mark.asyncio
    async def test_missing_declared_variable(self, engine, template_store):
        """Test a missing declared variable fails with its name."""
        await template_store.create_template(tool_down_template())

        with pytest.raises(MissingVariable) as exc_info:
            await engine.render("tool_down", {"tool_name": "Jira"})

        assert exc_info.value.missing == ["user_name"]

    @pytest.mark.asyncio
    async def test_missing_undeclared_variable(self, engine, template_store):
        """Test strict undefined handling catches undeclared references."""
        await template_store.create_template(tool_down_template(variables=[]))

        with pytest.raises(MissingVariable) as exc_info:
            await engine.render("tool_down", {"tool_name": "Jira"})

        assert exc_info.value.missing == ["user_name"]

    @pytest.mark.asyncio
    async def test_unknown_template(self, engine):
        with pytest.raises(UnknownTemplate):
            await engine.render("nope", {})

    @pytest.mark.asyncio
    async def test_disabled_template_is_unknown(self, engine, template_store):
        await template_store.create_template(tool_down_template(enabled=False))

        with pytest.raises(UnknownTemplate):
            await engine.render("tool_down", {"tool_name": "a", "user_name": "b"})

    @pytest.mark.asyncio
    async def test_unsupported_channel(self, engine, template_store):
        """Test rendering for a channel outside the supported set."""
        await template_store.create_template(tool_down_template())

        with pytest.raises(UnsupportedChannel):
            await engine.render("tool_down", {"tool_name": "a", "user_name": "b"}, ChannelKind.SMS)


class TestCache:
    """Tests for the compiled template cache."""

    @pytest.mark.asyncio
    async def test_hits_and_misses(self, engine, template_store):
        await template_store.create_template(tool_down_template())
        variables = {"tool_name": "a", "user_name": "b"}

        await engine.render("tool_down", variables)
        await engine.render("tool_down", variables)

        stats = engine.cache_stats()
        assert stats["misses"] == 1
        assert stats["hits"] == 1
        assert stats["size"] == 1

    @pytest.mark.asyncio
    async def test_entries_expire(self, engine, template_store, clock):
        """Test entries older than the TTL are reloaded."""
        await template_store.create_template(tool_down_template())
        variables = {"tool_name": "a", "user_name": "b"}

        await engine.render("tool_down", variables)
        clock.advance(61)
        await engine.render("tool_down", variables)

        assert engine.cache_stats()["misses"] == 2

    @pytest.mark.asyncio
    async def test_invalidate_picks_up_changes(self, engine, template_store):
        """Test an invalidated template is re-read from the store."""
        template = await template_store.create_template(tool_down_template())
        variables = {"tool_name": "a", "user_name": "b"}
        await engine.render("tool_down", variables)

        await template_store.update_template(template.model_copy(update={"subject_template": "{{ tool_name }} back"}))
        engine.invalidate("tool_down")

        assert (await engine.render("tool_down", variables)).subject == "a back"

    @pytest.mark.asyncio
    async def test_bounded_size(self, engine, template_store):
        """Test the oldest entry is evicted beyond max entries."""
        for name in ("one", "two", "three"):
            await template_store.create_template(
                Template(name=name, type="x", subject_template=name, body_template="body"),
            )
            await engine.render(name, {})

        stats = engine.cache_stats()
        assert stats["size"] == 2
        assert stats["evictions"] == 1


class TestValidation:
    """Tests for template validation and dry runs."""

    def test_valid_template(self, engine):
        assert engine.validate_template(tool_down_template()) == []

    def test_syntax_error_reported(self, engine):
        errors = engine.validate_template(tool_down_template(body_template="{% if x %}unclosed"))
        assert errors and errors[0].startswith("body:")

    def test_undeclared_variable_reported(self, engine):
        errors = engine.validate_template(tool_down_template(variables=["tool_name"]))
        assert any("user_name" in e for e in errors)

    def test_render_template_rejects_bad_syntax(self, engine):
        with pytest.raises(TemplateSyntaxInvalid):
            engine.render_template(tool_down_template(subject_template="{{ broken"), {})

    @pytest.mark.asyncio
    async def test_dry_run_success(self, engine, template_store):
        """Test a dry run merges test defaults under caller variables."""
        await template_store.create_template(
            Template(name="env", type="x", subject_template="[{{ environment }}] {{ tool_name }}",
                     body_template="{{ user_name }}", variables=["user_name"]),
        )

        result = await engine.test_template("env", {"user_name": "Ada", "tool_name": "jira"})

        assert result["success"] is True
        assert result["rendered"]["subject"] == "[test] jira"

    @pytest.mark.asyncio
    async def test_dry_run_reports_missing(self, engine, template_store):
        """Test a dry run reports failures instead of raising."""
        await template_store.create_template(tool_down_template())

        result = await engine.test_template("tool_down", {})

        assert result["success"] is False
        assert result["code"] == "MISSING_VARIABLE"
