"""
Seed Data Script - Creates a sample crisis-response playbook and scenario
Run: python -m scripts.seed_data
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from playbook_engine.repositories import get_repositories, create_indexes
from playbook_engine.domain.models import Playbook, Scenario
from playbook_engine.engine.graph_validator import GraphValidator
from playbook_engine.utils.time import utc_now

PLAYBOOK_ID = "PB-DEMO-CRISIS"
SCENARIO_ID = "SCN-DEMO-NEGATIVE-PRESS"


def build_sample_playbook() -> Playbook:
    """Assess -> approve statement -> publish -> wait for coverage -> report"""
    return Playbook.model_validate({
        "playbook_id": PLAYBOOK_ID,
        "name": "Negative Press Response",
        "description": "Respond to a spike in negative coverage",
        "version": 1,
        "steps": [
            {
                "step_id": "assess",
                "name": "Assess coverage",
                "action_type": "competitive_analysis",
                "action_payload": {"window_hours": 24, "estimated_cost": 50}
            },
            {
                "step_id": "alert_media",
                "name": "Alert media desk",
                "action_type": "media_alert",
                "action_payload": {"channel": "media-desk"},
                "depends_on_steps": ["assess"],
                "skip_on_failure": True
            },
            {
                "step_id": "escalate",
                "name": "Escalate to leadership",
                "action_type": "escalation",
                "depends_on_steps": ["assess"],
                "condition_expression": {
                    "logic": "or",
                    "conditions": [
                        {"field": "severity", "operator": "gte", "value": 7},
                        {"field": "assess.sentiment_delta", "operator": "lt", "value": -0.3}
                    ]
                }
            },
            {
                "step_id": "statement",
                "name": "Publish holding statement",
                "action_type": "content_publish",
                "action_payload": {"template": "holding_statement", "estimated_cost": 200},
                "requires_approval": True,
                "approval_roles": ["comms_lead", "legal"],
                "timeout_minutes": 120,
                "depends_on_steps": ["alert_media", "escalate"]
            },
            {
                "step_id": "await_coverage",
                "name": "Wait for coverage update",
                "action_type": "wait",
                "wait_for_signals": True,
                "signal_conditions": {
                    "signal_type": "coverage.updated",
                    "payload_filter": {"field": "region", "operator": "in", "value": ["EU", "US"]}
                },
                "timeout_minutes": 1440,
                "timeout_fallback": "skip",
                "depends_on_steps": ["statement"]
            },
            {
                "step_id": "report",
                "name": "Post-incident report",
                "action_type": "report_generation",
                "depends_on_steps": ["await_coverage"]
            }
        ]
    })


def build_sample_scenario() -> Scenario:
    return Scenario.model_validate({
        "scenario_id": SCENARIO_ID,
        "name": "Negative press spike",
        "scenario_type": "crisis",
        "parameters": {"severity": 8, "region": "EU"},
        "constraints": {
            "max_budget": 1000,
            "max_time_hours": 72,
            "required_approvals": ["comms_lead"],
            "risk_tolerance": "medium",
            "max_concurrency": 2
        },
        "default_playbook_id": PLAYBOOK_ID
    })


def seed() -> None:
    repos = get_repositories()
    if repos.backend == "mongo":
        create_indexes()

    if repos.playbooks.get_playbook(PLAYBOOK_ID):
        print("Demo playbook already present. Skipping seed.")
        return

    playbook = build_sample_playbook()
    playbook.created_at = utc_now()
    graph = GraphValidator().validate(playbook.steps)
    repos.playbooks.create_playbook(playbook)

    scenario = build_sample_scenario()
    scenario.created_at = utc_now()
    repos.playbooks.create_scenario(scenario)

    print(f"✅ Seeded playbook {PLAYBOOK_ID} ({len(playbook.steps)} steps): {' -> '.join(graph.order)}")
    print(f"✅ Seeded scenario {SCENARIO_ID}")
    print(f"\nStart a run: POST /api/v1/runs {{\"scenario_id\": \"{SCENARIO_ID}\"}}")


if __name__ == "__main__":
    seed()
