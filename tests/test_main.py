"""Tests for component wiring: create, open, resume, shutdown."""

from __future__ import annotations

import pytest

from gosling.engine.controller import TurnState
from gosling.errors import ModelResolutionError
from gosling.extensions.base import ExtensionConfig
from gosling.main import create_components, open_session, shutdown_components
from gosling.recipe import Recipe, RecipeParameter
from tests.conftest import FakeProvider, make_call, make_developer, make_settings, text_response, tool_response

BUILTINS = {"developer": lambda config: make_developer()}


@pytest.mark.asyncio
async def test_recipe_session_end_to_end():
    provider = FakeProvider([tool_response(make_call("developer", "shell", command="pytest")), text_response("green")])
    components = await create_components(make_settings(), {"fake": provider}, persist=False)
    recipe = Recipe(
        title="Run tests",
        instructions="Work in {{ repo }}.",
        prompt="Run the test suite",
        mode="auto",
        parameters=[RecipeParameter(key="repo")],
        extensions=[ExtensionConfig(name="developer")],
    )

    controller, prompt = await open_session(components, recipe=recipe, values={"repo": "gosling"}, builtins=BUILTINS)
    outcome = await controller.reply(prompt)
    await shutdown_components(components)

    assert prompt == "Run the test suite"
    assert outcome.state is TurnState.COMPLETED
    assert provider.calls[0]["system"].startswith("Work in gosling.")
    assert controller.session.turns[0].messages[-1].tool_results[0].payload == "$ pytest\nok"
    assert components["store"] is None


@pytest.mark.asyncio
async def test_resume_persisted_session(tmp_path):
    settings = make_settings(db_url=f"sqlite+aiosqlite:///{tmp_path / 'gosling.db'}")
    provider = FakeProvider([text_response("first"), text_response("second")])

    components = await create_components(settings, {"fake": provider})
    controller, _ = await open_session(components)
    await controller.reply("hello")
    session_id = controller.session.id
    await shutdown_components(components)

    components = await create_components(settings, {"fake": provider})
    resumed, prompt = await open_session(components, session_id=session_id)
    outcome = await resumed.reply("again")
    await shutdown_components(components)

    assert prompt == ""
    assert outcome.state is TurnState.COMPLETED
    assert [t.index for t in resumed.session.turns] == [0, 1]
    assert provider.calls[1]["messages"][0].text == "hello"


@pytest.mark.asyncio
async def test_unknown_session_id_starts_fresh(tmp_path):
    settings = make_settings(db_url=f"sqlite+aiosqlite:///{tmp_path / 'gosling.db'}")
    components = await create_components(settings, {"fake": FakeProvider()})

    controller, _ = await open_session(components, session_id="never-saved")
    await shutdown_components(components)

    assert controller.session.id == "never-saved"
    assert controller.session.turns == []


@pytest.mark.asyncio
async def test_open_session_validates_bindings():
    components = await create_components(
        make_settings(planner_provider="missing"), {"fake": FakeProvider()}, persist=False
    )
    with pytest.raises(ModelResolutionError):
        await open_session(components)
    await shutdown_components(components)
