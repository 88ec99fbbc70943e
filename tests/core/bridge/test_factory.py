"""
build_router 装配测试
"""

from pydantic import SecretStr

from config.settings import BridgeSettings
from core.bridge.factory import build_router
from core.bridge.router import InboundEventRouter


class TestBuildRouter:

    def test_creates_media_dir_and_uses_overrides(self, tmp_path, platform):
        settings = BridgeSettings(
            app_id="cli_test",
            app_secret=SecretStr("secret"),
            gateway_config_path=tmp_path / "moltbot.json",
            gateway_token=SecretStr("gw-token"),
            media_dir=tmp_path / "media" / "larksuite",
        )
        exchange = object()

        router = build_router(settings, platform=platform, exchange=exchange)

        assert isinstance(router, InboundEventRouter)
        assert (tmp_path / "media" / "larksuite").is_dir()
