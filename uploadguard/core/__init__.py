"""uploadguard threat-detection engine.

This package contains the pattern registry, the individual scanning passes
(literal, deobfuscation, polyglot, structural, document, heuristic) and the
scan orchestrator that sequences them into a single verdict.
"""
