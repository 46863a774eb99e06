"""
Configuration validation and the action log retention sweep.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from threadgate.config import Environment, Settings
from threadgate.models import ActionKind
from threadgate.tasks.sweep import purge_action_log
from threadgate.utils.time import utc_now
from threadgate.webhooks import normalize
from threadgate.webhooks.self_filter import SelfActionFilter

from fakes import issue_payload


def test_dispatch_rules_from_json():
    settings = Settings(
        dispatch_rules='[{"source_repo": "lib", "target_owner": "acme", '
        '"target_repo": "site", "workflow_file": "deploy.yml", "note": "ignored"}]'
    )

    assert len(settings.dispatch_rules) == 1
    rule = settings.dispatch_rules[0]
    assert rule.source_ref == "refs/heads/main"
    assert settings.rules_for_push("lib", "refs/heads/main") == [rule]
    assert settings.rules_for_push("lib", "refs/heads/dev") == []


def test_invalid_settings_rejected():
    with pytest.raises(ValidationError):
        Settings(database_url="postgresql://sync-driver/db")
    with pytest.raises(ValidationError):
        Settings(self_action_window_seconds=0)
    with pytest.raises(ValidationError):
        Settings(worker_url="ftp://worker")
    with pytest.raises(ValidationError):
        Settings(env=Environment.PRODUCTION, webhook_secret=None)


def test_integration_urls_normalized():
    settings = Settings(worker_url="http://worker.test/", telegram_bot_token="t", telegram_chat_id="c")

    assert settings.worker_url == "http://worker.test"
    assert settings.telegram_enabled


@pytest.mark.asyncio
async def test_purge_action_log(session, session_factory):
    self_filter = SelfActionFilter(session)
    now = utc_now()
    await self_filter.record(ActionKind.CREATE_ISSUE, "app", 1, at=now - timedelta(hours=3))
    await self_filter.record(ActionKind.CREATE_ISSUE, "app", 2, at=now)
    await session.commit()

    purged = await purge_action_log(retention_seconds=3600)

    assert purged == 1
    async with session_factory() as fresh:
        check = SelfActionFilter(fresh)
        assert await check.is_self_generated(normalize("issues", issue_payload("opened", 2)))
        assert not await check.is_self_generated(
            normalize("issues", issue_payload("opened", 1)), now=now - timedelta(hours=3)
        )


@pytest.mark.asyncio
async def test_zero_retention_purges_everything(session):
    self_filter = SelfActionFilter(session)
    await self_filter.record(ActionKind.GIT_PUSH, "app", "0123abcd", at=utc_now() - timedelta(seconds=5))
    await session.commit()

    assert await purge_action_log(retention_seconds=0) == 1
