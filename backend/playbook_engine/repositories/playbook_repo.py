"""Playbook Repository - Read access to playbook and scenario snapshots"""
from typing import Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection
from ..domain.models import Playbook, Scenario
from ..domain.errors import ConflictError, PlaybookNotFoundError, ScenarioNotFoundError
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class PlaybookRepository:
    """
    Repository for playbooks and scenarios

    The engine only reads these documents; create_* exists for the
    authoring collaborator and for seeding.
    """

    def __init__(self, database: Optional[Database] = None):
        self._playbooks: Collection = get_collection("playbooks", database)
        self._scenarios: Collection = get_collection("scenarios", database)

    # =========================================================================
    # Playbooks
    # =========================================================================

    def create_playbook(self, playbook: Playbook) -> Playbook:
        """Store a playbook"""
        if playbook.created_at is None:
            playbook = playbook.model_copy(update={"created_at": utc_now()})
        doc = playbook.model_dump()
        doc["_id"] = playbook.playbook_id

        try:
            self._playbooks.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Playbook {playbook.playbook_id} already exists")
        logger.info(f"Created playbook: {playbook.playbook_id}", extra={"playbook_id": playbook.playbook_id})
        return playbook

    def get_playbook(self, playbook_id: str) -> Optional[Playbook]:
        """Get playbook by ID"""
        doc = self._playbooks.find_one({"playbook_id": playbook_id})
        if doc:
            doc.pop("_id", None)
            return Playbook.model_validate(doc)
        return None

    def get_playbook_or_raise(self, playbook_id: str) -> Playbook:
        """Get playbook or raise PlaybookNotFoundError"""
        playbook = self.get_playbook(playbook_id)
        if not playbook:
            raise PlaybookNotFoundError(f"Playbook {playbook_id} not found")
        return playbook

    # =========================================================================
    # Scenarios
    # =========================================================================

    def create_scenario(self, scenario: Scenario) -> Scenario:
        """Store a scenario"""
        if scenario.created_at is None:
            scenario = scenario.model_copy(update={"created_at": utc_now()})
        doc = scenario.model_dump()
        doc["_id"] = scenario.scenario_id

        try:
            self._scenarios.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Scenario {scenario.scenario_id} already exists")
        logger.info(f"Created scenario: {scenario.scenario_id}", extra={"scenario_id": scenario.scenario_id})
        return scenario

    def get_scenario(self, scenario_id: str) -> Optional[Scenario]:
        """Get scenario by ID"""
        doc = self._scenarios.find_one({"scenario_id": scenario_id})
        if doc:
            doc.pop("_id", None)
            return Scenario.model_validate(doc)
        return None

    def get_scenario_or_raise(self, scenario_id: str) -> Scenario:
        """Get scenario or raise ScenarioNotFoundError"""
        scenario = self.get_scenario(scenario_id)
        if not scenario:
            raise ScenarioNotFoundError(f"Scenario {scenario_id} not found")
        return scenario
