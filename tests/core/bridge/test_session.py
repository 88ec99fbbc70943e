"""
SessionResolver 单元测试
"""

import pytest

from core.bridge.session import SessionResolver, build_base_key, to_base36


class TestBase36:

    @pytest.mark.parametrize("value,expected", [(0, "0"), (35, "z"), (36, "10"), (1700000000000, "loyw3v28")])
    def test_rendering(self, value, expected):
        assert to_base36(value) == expected

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            to_base36(-1)


# ===========================================================================
# resolve_key / apply_reset / current_key
# ===========================================================================


class TestSessionResolver:

    def setup_method(self):
        self.millis = 1700000000000
        self.resolver = SessionResolver(millis=lambda: self.millis)

    def test_key_without_reset(self):
        assert self.resolver.resolve_key("oc_1") == "larksuite:oc_1"
        assert build_base_key("oc_1") == "larksuite:oc_1"
        assert self.resolver.lookup("oc_1") is None

    def test_resolve_is_idempotent(self):
        assert self.resolver.resolve_key("oc_1") == self.resolver.resolve_key("oc_1")

    def test_reset_changes_key(self):
        before = self.resolver.resolve_key("oc_1")
        suffix = self.resolver.apply_reset("oc_1")

        after = self.resolver.resolve_key("oc_1")
        assert after == f"larksuite:oc_1:{suffix}"
        assert after != before
        assert self.resolver.resolve_key("oc_1") == after

    def test_reset_suffix_is_base36_millis(self):
        assert self.resolver.apply_reset("oc_1") == to_base36(1700000000000)

    def test_resets_in_same_millisecond_never_repeat_a_key(self):
        seen = {self.resolver.resolve_key("oc_1")}
        for _ in range(5):
            self.resolver.apply_reset("oc_1")
            key = self.resolver.resolve_key("oc_1")
            assert key not in seen
            seen.add(key)

    def test_reset_is_per_conversation(self):
        self.resolver.apply_reset("oc_1")
        assert self.resolver.resolve_key("oc_2") == "larksuite:oc_2"

    def test_current_key_does_not_mutate(self):
        self.resolver.apply_reset("oc_1")
        key = self.resolver.resolve_key("oc_1")
        assert self.resolver.current_key("oc_1") == key
        assert self.resolver.current_key("oc_9") == "larksuite:oc_9"
        assert self.resolver.lookup("oc_9") is None
