"""Tests for the sub-agent registry."""

import pytest

from gitpulse.models import SubAgentDefinition
from gitpulse.registry import STATS_TOOLS, SubAgentRegistry


def test_default_roles():
    """Three roles; the two history roles get the statistics tools."""
    reg = SubAgentRegistry()
    assert reg.names() == ["code-archaeologist", "git-forensics", "pattern-detective"]
    assert len(reg) == 3
    assert reg.get("code-archaeologist").extra_capabilities == ()
    assert reg.get("git-forensics").extra_capabilities == STATS_TOOLS
    assert reg.get("pattern-detective").extra_capabilities == STATS_TOOLS


def test_unknown_name_returns_none():
    assert SubAgentRegistry().get("foo") is None


def test_duplicate_names_rejected():
    d = SubAgentDefinition("dup", "a", "p")
    with pytest.raises(ValueError, match="Duplicate"):
        SubAgentRegistry((d, d))


def test_describe_lists_every_role():
    text = SubAgentRegistry().describe()
    assert text.count("\n") == 2
    assert "- git-forensics: " in text
