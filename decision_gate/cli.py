from __future__ import annotations

import argparse
import json
import os
import random
import sys
from collections import Counter
from typing import List, Optional

from .config import ConfigurationStore, read_config_file
from .logging_config import configure_logging
from .registry import ServiceRegistry
from .types import (
    Decision,
    DecisionType,
    EntityState,
    FactionDoctrine,
    FactionState,
    GameState,
    SquadState,
)
from .util import now_ms

DEFAULT_LOG_LEVEL = os.environ.get("DECISION_GATE_LOG_LEVEL", "WARNING")

TACTICS = ("assault", "flank", "hold", "retreat")
ENEMY_STATES = ("idle", "aware", "searching", "engage", "flank", "retreat")


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="decision-gate",
        description="Decision Gate - risk, authority and telemetry gating for AI decisions",
    )
    ap.add_argument("--log-level", default=DEFAULT_LOG_LEVEL, help="Log level")
    ap.add_argument("--log-dir", help="Directory for rotating log files")
    sub = ap.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP admin API")
    serve.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve.add_argument("--config", help="YAML/JSON config file to load and watch")
    serve.add_argument("--strict", action="store_true", help="Enable strict world-rule validation")

    check = sub.add_parser("check-config", help="Validate a YAML/JSON config file")
    check.add_argument("file", help="Config file to validate")

    sim = sub.add_parser("simulate", help="Run random decisions through a gate")
    sim.add_argument("--decisions", type=int, default=200, help="Number of decisions")
    sim.add_argument("--entities", type=int, default=10, help="Entities in the world")
    sim.add_argument("--seed", type=int, default=None, help="Random seed")
    sim.add_argument("--config", help="YAML/JSON config file")
    sim.add_argument("--strict", action="store_true", help="Enable strict world-rule validation")
    sim.add_argument("--json", action="store_true", help="Print the summary as JSON")

    return ap


def cmd_check_config(path: str) -> int:
    try:
        data = read_config_file(path)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    store = ConfigurationStore()
    errors = store.validate(data)
    if errors:
        print(f"{path}: {len(errors)} error(s)")
        for error in errors:
            print(f"  - {error}")
        return 1

    store.load(data)
    print(f"{path}: OK")
    print(json.dumps(store.to_dict(), indent=2))
    return 0


def _simulation_world(entities: int) -> GameState:
    """A small world: one faction, one squad, the last entity dead."""
    doctrine = FactionDoctrine(forbidden_actions=["declare_war"])
    state = GameState(
        factions={"bandits": FactionState(id="bandits", doctrine=doctrine)},
        world_time=now_ms(),
    )
    for i in range(entities):
        entity_id = f"enemy_{i}"
        state.entities[entity_id] = EntityState(
            id=entity_id,
            alive=i < entities - 1,
            faction_id="bandits",
        )
    members = [e for e in state.entities if state.entities[e].alive][:4]
    state.squads["squad_1"] = SquadState(id="squad_1", member_ids=members, faction_id="bandits")
    return state


def _random_decision(rng: random.Random, entity_ids: List[str]) -> Decision:
    dtype = rng.choice(list(DecisionType))
    params = {}
    action = dtype.value
    squad_id = None

    if dtype == DecisionType.SPAWN:
        params["count"] = rng.randint(1, 8)
    elif dtype == DecisionType.HEAT_CHANGE:
        params["delta"] = rng.randint(-30, 30)
    elif dtype == DecisionType.SQUAD_TACTIC:
        params["tactic_type"] = rng.choice(TACTICS)
        squad_id = "squad_1"
    elif dtype == DecisionType.ENEMY_UPDATE:
        params["new_state"] = rng.choice(ENEMY_STATES)
    if rng.random() < 0.05:
        action = "declare_war"

    return Decision.create(
        type=dtype,
        entity_id=rng.choice(entity_ids),
        action=action,
        parameters=params,
        priority=rng.randint(0, 8),
        faction_id="bandits",
        squad_id=squad_id,
    )


def cmd_simulate(args: argparse.Namespace) -> int:
    initial = None
    if args.config:
        try:
            initial = read_config_file(args.config)
        except ValueError as e:
            print(f"error: {e}", file=sys.stderr)
            return 1

    try:
        registry = ServiceRegistry(initial, strict=args.strict)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    world = _simulation_world(max(1, args.entities))
    registry.set_game_state_provider(lambda: world)

    rng = random.Random(args.seed)
    entity_ids = list(world.entities)
    outcomes: Counter = Counter()

    for _ in range(args.decisions):
        trace = registry.process(_random_decision(rng, entity_ids))
        if trace.executed:
            outcomes["executed"] += 1
        elif trace.validation is not None:
            outcomes[f"rejected:{trace.validation.reason.value}"] += 1
        elif trace.risk_assessment is not None and not trace.risk_assessment.approved:
            outcomes["rejected:RISK"] += 1
        else:
            outcomes["failed"] += 1

    summary = {
        "pipeline": registry.pipeline.get_stats(),
        "outcomes": dict(sorted(outcomes.items())),
        "counters": registry.get_counters().to_dict(),
        "spawn_throttle_active": registry.autofix.is_spawn_throttle_active(),
    }
    registry.shutdown()

    if args.json:
        print(json.dumps(summary, indent=2))
        return 0

    stats = summary["pipeline"]
    print(f"Processed {stats['total_processed']} decisions "
          f"({stats['approved']} executed, {stats['rejected']} not executed)")
    print(f"Average latency: {stats['average_latency_ms']:.3f}ms")
    for outcome, count in summary["outcomes"].items():
        print(f"  {outcome:<32} {count}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(level=args.log_level, log_dir=args.log_dir)

    if args.command == "check-config":
        return cmd_check_config(args.file)
    if args.command == "simulate":
        return cmd_simulate(args)

    from .api import serve
    serve(host=args.host, port=args.port, config_path=args.config, strict=args.strict)
    return 0


if __name__ == "__main__":
    sys.exit(main())
