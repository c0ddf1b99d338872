"""Unit tests for uploadguard/core/registry.py.

Coverage targets:
* ``add`` compiles regex and literal signatures, generates ids, rejects
  duplicates and invalid regexes.
* ``remove`` works by id, by signature and by instance.
* ``snapshot`` is an immutable tuple unaffected by later mutation.
* Concurrent ``add`` calls from many threads never lose a pattern.
"""

from __future__ import annotations

import json
import threading

import pytest

from uploadguard.core.models import ThreatCategory, ThreatPattern
from uploadguard.core.registry import InvalidPatternError, PatternRegistry


class TestAdd:
    def test_add_returns_generated_id(self):
        registry = PatternRegistry()
        pattern_id = registry.add("CUSTOMTOKEN")
        assert pattern_id == "custom_1"
        assert pattern_id in registry
        assert len(registry) == 1

    def test_add_with_explicit_id_and_category(self):
        registry = PatternRegistry()
        pattern_id = registry.add(r"evil\d+", ThreatCategory.WEBSHELL_INDICATOR, pattern_id="evil_numbers")
        (pattern,) = registry.snapshot()
        assert pattern_id == "evil_numbers"
        assert pattern.category is ThreatCategory.WEBSHELL_INDICATOR

    def test_category_accepts_string_value(self):
        registry = PatternRegistry()
        registry.add("token", "network_function")
        assert registry.snapshot()[0].category is ThreatCategory.NETWORK_FUNCTION

    def test_string_signature_is_case_insensitive_regex(self):
        registry = PatternRegistry()
        registry.add(r"custom\s+token")
        regex = registry.snapshot()[0].regex
        assert regex.search(b"xx CUSTOM   Token xx")

    def test_bytes_signature_is_literal(self):
        registry = PatternRegistry()
        registry.add(b"a.b")
        regex = registry.snapshot()[0].regex
        assert regex.search(b"--A.B--")
        assert not regex.search(b"axb")

    def test_prebuilt_pattern_keeps_its_id(self):
        registry = PatternRegistry()
        pattern = ThreatPattern.compile("prebuilt", "zzz", ThreatCategory.CUSTOM)
        assert registry.add(pattern) == "prebuilt"

    def test_duplicate_id_rejected(self):
        registry = PatternRegistry()
        registry.add("one", pattern_id="dup")
        with pytest.raises(InvalidPatternError):
            registry.add("two", pattern_id="dup")

    def test_invalid_regex_rejected(self):
        registry = PatternRegistry()
        with pytest.raises(InvalidPatternError):
            registry.add("(unclosed")

    def test_unknown_category_rejected(self):
        registry = PatternRegistry()
        with pytest.raises(InvalidPatternError):
            registry.add("token", "not-a-category")

    def test_invalid_pattern_error_is_value_error(self):
        assert issubclass(InvalidPatternError, ValueError)


class TestRemove:
    def test_remove_by_id(self):
        registry = PatternRegistry()
        pattern_id = registry.add("token")
        assert registry.remove(pattern_id) is True
        assert len(registry) == 0

    def test_remove_by_signature(self):
        registry = PatternRegistry()
        registry.add(r"eval\s*\(")
        assert registry.remove(r"eval\s*\(") is True
        assert len(registry) == 0

    def test_remove_by_instance(self):
        registry = PatternRegistry()
        registry.add("token", pattern_id="t")
        (pattern,) = registry.snapshot()
        assert registry.remove(pattern) is True

    def test_remove_unknown_returns_false(self):
        registry = PatternRegistry()
        registry.add("token")
        assert registry.remove("nothing-like-this") is False
        assert len(registry) == 1

    def test_remove_builtin(self, registry: PatternRegistry):
        assert "script_tag" in registry
        registry.remove("script_tag")
        assert "script_tag" not in registry


class TestSnapshot:
    def test_snapshot_is_tuple(self, registry: PatternRegistry):
        assert isinstance(registry.snapshot(), tuple)

    def test_snapshot_preserves_registration_order(self):
        registry = PatternRegistry()
        for name in ("a", "b", "c"):
            registry.add(name, pattern_id=name)
        assert [p.pattern_id for p in registry.snapshot()] == ["a", "b", "c"]
        assert registry.ids() == ["a", "b", "c"]

    def test_snapshot_unaffected_by_later_mutation(self):
        registry = PatternRegistry()
        registry.add("first", pattern_id="first")
        snapshot = registry.snapshot()
        registry.add("second", pattern_id="second")
        registry.remove("first")
        assert [p.pattern_id for p in snapshot] == ["first"]
        assert registry.ids() == ["second"]

    def test_concurrent_adds_are_serialized(self):
        registry = PatternRegistry()

        def worker(offset: int) -> None:
            for i in range(50):
                registry.add(f"token_{offset}_{i}", pattern_id=f"p_{offset}_{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(registry) == 400
        assert len(set(registry.ids())) == 400


class TestWithBuiltinPatterns:
    def test_builtins_loaded(self):
        registry = PatternRegistry.with_builtin_patterns()
        assert registry.ids()[0] == "php_open_tag"
        assert "eval_call" in registry

    def test_custom_file_appended(self, tmp_path):
        path = tmp_path / "patterns.json"
        path.write_text(json.dumps([{"id": "acme_marker", "pattern": "acme-backdoor"}]))
        registry = PatternRegistry.with_builtin_patterns(path)
        assert registry.ids()[-1] == "acme_marker"
