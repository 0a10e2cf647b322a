"""Script to validate workflow definition files

Usage:
    python scripts/validate_definitions.py                  # ./definitions
    python scripts/validate_definitions.py path/to/dir_or_file
    python scripts/validate_definitions.py --verbose        # print every step
"""
import argparse
import io
import sys
from pathlib import Path

sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding='utf-8')
sys.path.insert(0, ".")

from caseflow.domain.errors import DefinitionError
from caseflow.engine.registry import DefinitionRegistry
from caseflow.engine.definition_loader import load_definition_file, DEFINITION_SUFFIXES


def describe(definition, verbose: bool) -> None:
    terminal = [s.id for s in definition.steps if s.is_terminal]
    transitions = sum(len(s.transitions) for s in definition.steps)
    guarded = sum(1 for s in definition.steps for t in s.transitions if t.guard)

    print(f"✅ {definition.name} (v{definition.version})")
    print(f"   Steps: {len(definition.steps)}  Transitions: {transitions}  Guarded: {guarded}")
    print(f"   🚀 START STEP: {definition.get_initial_step_id()}")
    print(f"   🏁 TERMINAL: {', '.join(terminal) or '(terminal transitions only)'}")

    unreachable = definition.find_unreachable_steps()
    if unreachable:
        print(f"   ⚠️ Unreachable: {', '.join(unreachable)}")

    if not verbose:
        return

    for step in definition.steps:
        print(f"\n   [{step.id}] {step.name}")
        if step.assignee.kind.value != "none":
            print(f"      👤 Assignee: {step.assignee.kind.value} "
                  f"{step.assignee.role or step.assignee.user_id or step.assignee.field}")
        for t in step.transitions:
            guard = ""
            if t.guard:
                parts = [f"{c.field} {c.operator.value} {c.value!r}" for c in t.guard.conditions]
                guard = f" if {f' {t.guard.logic} '.join(parts)}"
            print(f"      • {t.trigger} → {t.target or '(complete)'}{guard}")


def validate(target: Path, verbose: bool) -> int:
    if target.is_dir():
        files = [p for p in sorted(target.iterdir()) if p.suffix in DEFINITION_SUFFIXES]
    else:
        files = [target]

    if not files:
        print(f"❌ No definition files found in {target}")
        return 1

    registry = DefinitionRegistry()
    failures = 0

    print("=" * 60)
    print("WORKFLOW DEFINITION VALIDATION")
    print("=" * 60)

    for path in files:
        print(f"\n📄 {path.name}")
        try:
            definition = registry.register(load_definition_file(path))
        except DefinitionError as e:
            failures += 1
            print(f"❌ {e.message}")
            for error in e.details.get("errors", []):
                print(f"   • {error}")
            continue
        describe(definition, verbose)

    print("\n" + "=" * 60)
    if failures:
        print(f"❌ {failures} of {len(files)} definitions have errors")
        return 1
    print(f"🎉 ALL {len(files)} DEFINITIONS ARE VALID!")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Validate workflow definition files")
    parser.add_argument(
        "path",
        nargs="?",
        default="./definitions",
        help="Definition file or directory (default: ./definitions)"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print steps and transitions"
    )
    args = parser.parse_args()
    sys.exit(validate(Path(args.path), args.verbose))


if __name__ == "__main__":
    main()
