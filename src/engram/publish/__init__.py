"""Rule publishing."""

from engram.publish.formatter import render, rule_hash, scope_globs
from engram.publish.publisher import Publisher
from engram.publish.writer import FileRuleWriter, RuleWriter

__all__ = ["FileRuleWriter", "Publisher", "RuleWriter", "render", "rule_hash", "scope_globs"]
