"""Tests for namespaced capability keys."""

import pytest

from mcp_switchboard.bridge.namespacing import (
    namespace_resource,
    namespace_tool,
    resource_owner,
    strip_resource,
    strip_tool,
    tool_owner,
)


class TestToolKeys:
    def test_namespace(self) -> None:
        assert namespace_tool("alpha", "echo") == "alpha__echo"

    def test_distinct_backends_never_collide(self) -> None:
        assert namespace_tool("alpha", "echo") != namespace_tool("beta", "echo")
        # "a" + "b__c" vs "a__b" + "c": the second name is not a valid backend
        assert tool_owner(namespace_tool("a", "b__c")) == "a"

    @pytest.mark.parametrize("original", ["echo", "with__separator", "__leading", "trailing__", "x"])
    def test_round_trip(self, original: str) -> None:
        key = namespace_tool("alpha", original)
        assert strip_tool("alpha", key) == original
        assert namespace_tool("alpha", strip_tool("alpha", key)) == key

    def test_strip_only_removes_prefix(self) -> None:
        assert strip_tool("alpha", "alpha__alpha__echo") == "alpha__echo"

    def test_strip_wrong_backend_raises(self) -> None:
        with pytest.raises(ValueError):
            strip_tool("beta", "alpha__echo")

    def test_owner(self) -> None:
        assert tool_owner("my-server__do_thing") == "my-server"
        assert tool_owner("no_separator") is None
        assert tool_owner("__echo") is None
        assert tool_owner("alpha__") is None


class TestResourceKeys:
    def test_namespace(self) -> None:
        assert namespace_resource("alpha", "file:///notes.txt") == "alpha://file:///notes.txt"

    def test_round_trip(self) -> None:
        original = "docs://guide/alpha://nested?q=1"
        key = namespace_resource("alpha", original)
        assert strip_resource("alpha", key) == original

    def test_strip_wrong_backend_raises(self) -> None:
        with pytest.raises(ValueError):
            strip_resource("beta", "alpha://file:///x")

    def test_owner(self) -> None:
        assert resource_owner("alpha://file:///x") == "alpha"
        assert resource_owner("plain-name") is None
