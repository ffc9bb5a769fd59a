"""
Field Compatibility Filter

Export-time gate that keeps generated XML acceptable to the game server. The
server ships without a schema contract, so the rules were mined from its
production error logs: fields it rejects outright (scoped blacklist) and
values it rejects (corrections).

Key Responsibilities:
- Load a versioned ruleset from JSON (the packaged default or a custom file)
- Verify at load time that every correction is idempotent
- Evaluate one field as DROP, REWRITE(value) or KEEP without side effects
- Filter whole rows and keep running statistics for reporting

Scope tags are resolved against the table name of the row being exported:
a rule scoped to ``skill`` applies to ``skill``, ``skill_learn`` or
``client_skill_tree`` but never to ``npc_template``, even when both carry a
field with the same name.
"""

import json
import logging
import re
import threading
from collections import Counter
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Dict, Any, List, Optional, Union

from ..exceptions import RuleDefinitionError
from ..interfaces import FieldFilterInterface
from ..models import (
    BlacklistRule,
    CorrectionRule,
    FieldAction,
    FieldDecision,
    FieldRuleSet,
    FilterResult,
    MatchPredicate,
    xml_field_name,
)


DEFAULT_RULES_PATH = Path(__file__).resolve().parent.parent / "config" / "rules" / "server_compat.json"

PREDICATE_KINDS = ("equals", "in", "regex", "greater_than", "greater_or_equal", "less_than")

# Sample values used to exercise regex corrections during the idempotence check
_REGEX_SAMPLES = ("0", "1", "7", "42", "120", "255", "7080", "60000", "abc", "str_1", "DP", "HP")


def _as_number(value: str) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def predicate_matches(predicate: MatchPredicate, value: Optional[str]) -> bool:
    """Test a raw field value against a correction predicate."""
    if value is None:
        return False
    kind, operand = predicate.kind, predicate.operand
    if kind == "equals":
        return value == str(operand)
    if kind == "in":
        return value in {str(o) for o in operand}
    if kind == "regex":
        return re.search(operand, value) is not None
    number = _as_number(value)
    if number is None:
        return False
    if kind == "greater_than":
        return number > float(operand)
    if kind == "greater_or_equal":
        return number >= float(operand)
    if kind == "less_than":
        return number < float(operand)
    raise RuleDefinitionError(f"Unknown predicate kind: {kind}")


def render_replacement(replacement: Any, value: str) -> str:
    """Produce the corrected value from a literal, template or lookup replacement."""
    if isinstance(replacement, dict):
        lookup = replacement.get("lookup", {})
        if value in lookup:
            return str(lookup[value])
        return str(replacement.get("default", value)).replace("{value}", value)
    return str(replacement).replace("{value}", value)


def parse_ruleset(data: Dict[str, Any], source: Optional[str] = None) -> FieldRuleSet:
    """
    Build a FieldRuleSet from its JSON representation.

    Raises:
        RuleDefinitionError: If the document is malformed
    """
    if not isinstance(data, dict) or "version" not in data:
        raise RuleDefinitionError(f"Ruleset {source or '<inline>'} must be an object with a version")

    scopes = {}
    for name, patterns in (data.get("scopes") or {}).items():
        if isinstance(patterns, str):
            patterns = [patterns]
        scopes[name] = tuple(p.lower() for p in patterns)

    rules = []
    for entry in data.get("blacklist", []):
        scope = entry.get("scope", "*")
        fields = entry.get("fields") or ([entry["field"]] if "field" in entry else [])
        if not fields:
            raise RuleDefinitionError(f"Blacklist entry without fields in {source}: {entry}")
        for field_name in fields:
            rules.append(BlacklistRule(field_name=field_name, scope_tag=scope, reason=entry.get("reason")))

    for entry in data.get("corrections", []):
        try:
            field_name = entry["field"]
            match = entry["match"]
            replacement = entry["replacement"]
        except KeyError as e:
            raise RuleDefinitionError(f"Correction entry missing {e} in {source}: {entry}")
        if not isinstance(match, dict) or len(match) != 1:
            raise RuleDefinitionError(f"Correction for {field_name} needs exactly one predicate")
        kind, operand = next(iter(match.items()))
        if kind not in PREDICATE_KINDS:
            raise RuleDefinitionError(f"Unknown predicate '{kind}' for {field_name}")
        if kind == "regex":
            try:
                re.compile(operand)
            except re.error as e:
                raise RuleDefinitionError(f"Invalid regex for {field_name}: {e}")
        if kind == "in":
            operand = tuple(operand)
        rules.append(CorrectionRule(
            field_name=field_name,
            match_predicate=MatchPredicate(kind, operand),
            replacement=replacement,
            scope_tag=entry.get("scope", "*"),
            reason=entry.get("reason"),
        ))

    return FieldRuleSet(version=str(data["version"]), rules=tuple(rules), scopes=scopes, source=source)


def load_ruleset(path: Optional[Union[str, Path]] = None) -> FieldRuleSet:
    """Load a ruleset file, defaulting to the packaged server ruleset."""
    rules_path = Path(path) if path else DEFAULT_RULES_PATH
    if not rules_path.exists():
        raise RuleDefinitionError(f"Field ruleset not found: {rules_path}")
    try:
        with open(rules_path, 'r', encoding='utf-8') as file:
            data = json.load(file)
    except json.JSONDecodeError as e:
        raise RuleDefinitionError(f"Failed to parse field ruleset {rules_path}: {e}")
    return parse_ruleset(data, str(rules_path))


class FieldCompatibilityFilter(FieldFilterInterface):
    """
    Pure evaluation of the server compatibility ruleset.

    ``evaluate`` has no side effects; ``filter_record`` additionally updates
    thread-safe statistics that ``statistics`` and ``report`` expose.
    """

    def __init__(self, ruleset: Optional[FieldRuleSet] = None, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger(__name__)
        self.ruleset = ruleset if ruleset is not None else load_ruleset()
        self._scope_cache: Dict[str, tuple] = {}
        self._stats_lock = threading.Lock()
        self._removed = Counter()
        self._corrected = Counter()
        self._rows_filtered = 0
        self.verify_idempotence()
        self.logger.debug(
            f"Loaded field ruleset {self.ruleset.version}: "
            f"{len(self.ruleset.blacklist_rules)} blacklist, {len(self.ruleset.correction_rules)} corrections"
        )

    @classmethod
    def from_file(cls, path: Optional[Union[str, Path]] = None) -> 'FieldCompatibilityFilter':
        return cls(load_ruleset(path))

    @property
    def version(self) -> str:
        return self.ruleset.version

    def _scope_applies(self, rule_scope: str, table_name: str) -> bool:
        if rule_scope == "*":
            return True
        return any(fnmatchcase(table_name, p) for p in self.ruleset.scope_patterns(rule_scope))

    def _rules_for(self, table_name: str) -> tuple:
        key = table_name.lower()
        cached = self._scope_cache.get(key)
        if cached is None:
            blacklist = frozenset(
                r.field_name for r in self.ruleset.blacklist_rules if self._scope_applies(r.scope_tag, key)
            )
            corrections = {}
            for rule in self.ruleset.correction_rules:
                if self._scope_applies(rule.scope_tag, key):
                    corrections.setdefault(rule.field_name, []).append(rule)
            blacklist_rules = {
                r.field_name: r for r in self.ruleset.blacklist_rules if self._scope_applies(r.scope_tag, key)
            }
            cached = (blacklist, corrections, blacklist_rules)
            self._scope_cache[key] = cached
        return cached

    def evaluate(self, field_name: str, scope_tag: str, raw_value: Optional[str]) -> FieldDecision:
        """
        Decide what happens to one field of one exported row.

        Args:
            field_name: XML field name (element tag or attribute name)
            scope_tag: Structural context of the row, i.e. its table name
            raw_value: Stored value as XML text, None for NULL

        Returns:
            FieldDecision with DROP, REWRITE(value) or KEEP
        """
        blacklist, corrections, blacklist_rules = self._rules_for(scope_tag)
        if field_name in blacklist:
            return FieldDecision.drop(blacklist_rules[field_name])
        for rule in corrections.get(field_name, ()):
            if predicate_matches(rule.match_predicate, raw_value):
                corrected = render_replacement(rule.replacement, raw_value)
                if corrected != raw_value:
                    return FieldDecision.rewrite(corrected, rule)
        return FieldDecision.keep(raw_value)

    def apply(self, field_name: str, scope_tag: str, raw_value: Optional[str]) -> Optional[str]:
        """Value after filtering, None when the field is dropped."""
        decision = self.evaluate(field_name, scope_tag, raw_value)
        if decision.action == FieldAction.DROP:
            return None
        return decision.value

    def filter_record(self, scope_tag: str, fields: Dict[str, str], validate_only: bool = False,
                      record_statistics: bool = True) -> FilterResult:
        """
        Filter one row given as field name to XML text.

        Attribute columns (``_attr_<name>``) are judged by their attribute name,
        so a rule for a field applies whether it is an element or an attribute.
        The filtered row keeps the keys it was given.

        Args:
            scope_tag: Table name of the row
            fields: Field name to raw text, in output order
            validate_only: Report what would change but return the row untouched
            record_statistics: Count the changes in the running statistics

        Returns:
            FilterResult with the filtered row and change details
        """
        result = FilterResult(filtered={})
        for name, value in fields.items():
            field_name = xml_field_name(name)
            decision = self.evaluate(field_name, scope_tag, value)
            if decision.action == FieldAction.DROP:
                result.removed_fields.append(name)
                if validate_only:
                    result.filtered[name] = value
                    result.warnings.append(f"{scope_tag}.{field_name} is not accepted by the server")
            elif decision.action == FieldAction.REWRITE:
                result.corrected_fields[name] = (value, decision.value)
                result.filtered[name] = value if validate_only else decision.value
                if validate_only:
                    result.warnings.append(f"{scope_tag}.{field_name}={value} would be corrected to {decision.value}")
            else:
                result.filtered[name] = value

        if record_statistics and not validate_only:
            with self._stats_lock:
                self._rows_filtered += 1
                for name in result.removed_fields:
                    self._removed[f"{scope_tag}.{xml_field_name(name)}"] += 1
                for name in result.corrected_fields:
                    self._corrected[f"{scope_tag}.{xml_field_name(name)}"] += 1
        return result

    def validate_only(self, scope_tag: str, fields: Dict[str, str]) -> FilterResult:
        return self.filter_record(scope_tag, fields, validate_only=True)

    def blacklisted_fields(self, scope_tag: str) -> List[str]:
        return sorted(self._rules_for(scope_tag)[0])

    def verify_idempotence(self) -> None:
        """
        Check that re-applying any correction is a no-op.

        Raises:
            RuleDefinitionError: If a corrected value would be corrected again
        """
        by_field = {}
        for rule in self.ruleset.correction_rules:
            by_field.setdefault((rule.field_name, rule.scope_tag), []).append(rule)

        for (field_name, scope), rules in by_field.items():
            for rule in rules:
                for sample in self._sample_values(rule):
                    once = self._apply_chain(rules, sample)
                    twice = self._apply_chain(rules, once)
                    if once != twice:
                        raise RuleDefinitionError(
                            f"Correction for {scope}.{field_name} is not idempotent: "
                            f"{sample!r} -> {once!r} -> {twice!r}"
                        )

    @staticmethod
    def _apply_chain(rules: List[CorrectionRule], value: str) -> str:
        for rule in rules:
            if predicate_matches(rule.match_predicate, value):
                return render_replacement(rule.replacement, value)
        return value

    @staticmethod
    def _sample_values(rule: CorrectionRule) -> List[str]:
        kind, operand = rule.match_predicate.kind, rule.match_predicate.operand
        if kind == "equals":
            return [str(operand)]
        if kind == "in":
            return [str(o) for o in operand]
        if kind in ("greater_than", "greater_or_equal", "less_than"):
            base = float(operand)
            candidates = [base - 1, base, base + 1, base * 2 + 1]
            return [str(int(c)) if c.is_integer() else str(c) for c in candidates]
        samples = [p for p in _REGEX_SAMPLES if re.search(operand, p)]
        if isinstance(rule.replacement, dict):
            samples.extend(str(k) for k in rule.replacement.get("lookup", {}))
        return samples

    def statistics(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "ruleset_version": self.version,
                "rows_filtered": self._rows_filtered,
                "fields_removed": sum(self._removed.values()),
                "fields_corrected": sum(self._corrected.values()),
                "removed_by_field": dict(self._removed),
                "corrected_by_field": dict(self._corrected),
            }

    def reset_statistics(self) -> None:
        with self._stats_lock:
            self._removed.clear()
            self._corrected.clear()
            self._rows_filtered = 0

    def report(self) -> str:
        """Human readable summary of what the filter changed so far."""
        stats = self.statistics()
        lines = [
            f"Server compatibility filter (ruleset {stats['ruleset_version']})",
            f"  rows filtered: {stats['rows_filtered']}",
            f"  fields removed: {stats['fields_removed']}",
            f"  fields corrected: {stats['fields_corrected']}",
        ]
        for key, count in sorted(stats["removed_by_field"].items()):
            lines.append(f"    removed {key}: {count}")
        for key, count in sorted(stats["corrected_by_field"].items()):
            lines.append(f"    corrected {key}: {count}")
        return "\n".join(lines)
