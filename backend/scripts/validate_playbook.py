"""
Validate a playbook document offline

Runs the same graph checks a run start performs (unique ids, resolvable
dependencies, no self-dependency, signal type present, no cycles) and prints
either the problems or one valid execution order.

Run: python -m scripts.validate_playbook path/to/playbook.json
Exit code 0 when valid, 1 when invalid, 2 on unreadable input.
"""
import argparse
import json
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pydantic import ValidationError as SchemaError

from playbook_engine.domain.models import Playbook
from playbook_engine.domain.errors import GraphCyclicError, GraphInvalidError
from playbook_engine.engine.graph_validator import GraphValidator
from playbook_engine.engine.action_gateway import ActionGateway, register_default_handlers
from playbook_engine.repositories.inmemory import InMemoryDispatchRepository


def validate_playbook(document: dict) -> int:
    try:
        playbook = Playbook.model_validate(document)
    except SchemaError as e:
        print(f"❌ Not a playbook document ({e.error_count()} schema error(s))")
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"])
            print(f"   • {location}: {error['msg']}")
        return 1

    print(f"Playbook: {playbook.name} ({playbook.playbook_id}, v{playbook.version})")
    print(f"Steps: {len(playbook.steps)}")
    print()

    try:
        graph = GraphValidator().validate(playbook.steps)
    except GraphInvalidError as e:
        print(f"❌ Invalid graph: {len(e.errors)} problem(s)")
        for error in e.errors:
            print(f"   • [{error['type']}] {error['message']}")
        return 1
    except GraphCyclicError as e:
        print(f"❌ Dependency cycle: {' -> '.join(e.cycle)}")
        return 1

    gateway = register_default_handlers(ActionGateway(InMemoryDispatchRepository()))
    unknown = sorted({s.action_type for s in playbook.steps if not gateway.supports(s.action_type)})

    print("✅ Graph is a valid DAG")
    print("\nExecution order:")
    for index, step_id in enumerate(graph.order, start=1):
        step = next(s for s in playbook.steps if s.step_id == step_id)
        flags = []
        if step.requires_approval:
            flags.append("approval")
        if step.wait_for_signals:
            flags.append(f"signal:{step.signal_conditions.signal_type}")
        if step.condition_expression is not None:
            flags.append("conditional")
        if step.skip_on_failure:
            flags.append("skip_on_failure")
        deps = ", ".join(graph.predecessors[step_id]) or "-"
        suffix = f"  [{', '.join(flags)}]" if flags else ""
        print(f"  {index}. {step_id} ({step.action_type}) after: {deps}{suffix}")

    if unknown:
        print(f"\n⚠️  Action types without a built-in handler: {', '.join(unknown)}")
        print("   A run needs a registered handler for each of them.")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate a playbook JSON document")
    parser.add_argument("path", help="Path to the playbook JSON file")
    args = parser.parse_args()

    try:
        with open(args.path, encoding="utf-8") as f:
            document = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"❌ Could not read {args.path}: {e}")
        return 2

    return validate_playbook(document)


if __name__ == "__main__":
    sys.exit(main())
