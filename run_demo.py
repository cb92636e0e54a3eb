#!/usr/bin/env python3
"""
Demo: episode resolution, approvals and number generation

This script walks through the main workflow:
1. Open an episode of care and attach sub-resources to it
2. Resolve sub-resource ids back to the episode (and the NotLinked case)
3. Grant an approval to another organization and list approvals
4. Allocate formatted numbers from a named sequence
"""
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone

from episode_rpc.config import get_settings
from episode_rpc.mcp_tools import EpisodeTools
from episode_rpc.models import (
    Approval,
    Coding,
    Episode,
    Period,
    Reference,
    ResourceKind,
    StatusHistoryEntry,
)
from episode_rpc.storage import Database, ResourceStore, SequenceStore


# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(levelname)s: %(message)s'
)
logger = logging.getLogger(__name__)

CLINIC = str(uuid.uuid4())
HOSPITAL = str(uuid.uuid4())


def show(title, result):
    print(f"\n{title}")
    print(json.dumps(result, indent=2, default=str))


def main():
    """Run the demo workflow."""
    print("\n" + "="*80)
    print("EPISODE RESOLUTION AND NUMBER GENERATION")
    print("="*80)

    settings = get_settings()
    database = Database(settings.database_path)
    store = ResourceStore(database)
    sequences = SequenceStore(database, settings.sequence_initial_value)
    tools = EpisodeTools(store, sequences, settings)

    print("\n" + "-"*80)
    print("STEP 1: Open an episode and attach sub-resources")
    print("-"*80)

    opened = datetime.now(timezone.utc) - timedelta(days=14)
    episode = store.create_episode(Episode(
        id=str(uuid.uuid4()),
        patient_id=str(uuid.uuid4()),
        name="Type 2 diabetes management",
        type=Coding(system="eHealth/episode_types", code="primary_care"),
        period=Period(start=opened),
        managing_organization=Reference(type="legal_entity", id=CLINIC),
        status_history=[StatusHistoryEntry(status="active", changed_at=opened)],
    ))
    observation_id = str(uuid.uuid4())
    orphan_id = str(uuid.uuid4())
    store.put_sub_resource(ResourceKind.OBSERVATION, observation_id, {"code": "HbA1c"}, episode_id=episode.id)
    store.put_sub_resource(ResourceKind.OBSERVATION, orphan_id, {"code": "BMI"}, episode_id=None)
    print(f"Episode {episode.id} managed by {CLINIC}")

    print("\n" + "-"*80)
    print("STEP 2: Resolve sub-resources to their episode")
    print("-"*80)

    linked = tools.episode_by_observation_id(client_id=CLINIC, client_type="MSP", resource_id=observation_id)
    print(f"Linked observation -> episode {linked['episode']['id']} ({linked['episode']['status']})")
    show("Observation without episode:",
         tools.episode_by_observation_id(client_id=CLINIC, client_type="MSP", resource_id=orphan_id))
    show("Hospital without approval:",
         tools.episode_by_observation_id(client_id=HOSPITAL, client_type="MSP", resource_id=observation_id))

    print("\n" + "-"*80)
    print("STEP 3: Grant the hospital access and list approvals")
    print("-"*80)

    now = datetime.now(timezone.utc)
    store.create_approval(Approval(
        id=str(uuid.uuid4()),
        episode=Reference(type="episode_of_care", id=episode.id),
        granted_to=Reference(type="legal_entity", id=HOSPITAL),
        granted_resources=[ResourceKind.OBSERVATION],
        period=Period(start=now - timedelta(hours=1), end=now + timedelta(days=30)),
        reason="Referral",
    ))
    granted = tools.episode_by_observation_id(client_id=HOSPITAL, client_type="MSP", resource_id=observation_id)
    print(f"Hospital now resolves the observation: {granted['status']}")
    listing = tools.approvals_by_episode(client_id=CLINIC, client_type="MSP", episode_id=episode.id)
    print(f"Approvals on episode: {listing['count']}")

    print("\n" + "-"*80)
    print("STEP 4: Allocate episode numbers")
    print("-"*80)

    sequences.create_sequence("episode-number-2024", initial_value=10)
    show("Three numbers:", tools.number("episode-number-2024", 3, {"template": "EP-%06d"}))
    show("Invalid count:", tools.number("episode-number-2024", 0))

    database.close()
    print("\n" + "="*80)
    print("DEMO COMPLETE")
    print("="*80 + "\n")


if __name__ == "__main__":
    main()
