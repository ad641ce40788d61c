#!/usr/bin/env python3
"""
Basic Usage Example for Ontology Engine

This example demonstrates:
1. Running the extraction DAG against SQLite without a model
2. Reviewing relationship candidates
3. Exporting the finished ontology
"""
import sqlite3
import sys
import os

# Add src to path for local development
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from ontology_engine import (
    DAGService,
    DatabaseConfig,
    InMemoryStore,
    RelationshipWorkflowService,
    SQLiteAdapter,
    setup_logging,
)


def build_database() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.executescript("""
        CREATE TABLE users (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT,
            created_at TIMESTAMP
        );
        CREATE TABLE orders (
            id INTEGER PRIMARY KEY,
            user_id INTEGER,
            total_amount INTEGER,
            status TEXT,
            completed_at TIMESTAMP
        );
    """)
    conn.executemany(
        "INSERT INTO users (name, email, created_at) VALUES (?, ?, ?)",
        [(f"user {i}", f"user{i}@example.com", "2024-01-01 09:00:00") for i in range(1, 21)],
    )
    orders = []
    for i in range(200):
        status = ("pending", "shipped", "delivered")[i % 3]
        completed = "2024-02-01 12:00:00" if status == "delivered" else None
        orders.append(((i % 20) + 1, 1000 + i * 5, status, completed))
    conn.executemany(
        "INSERT INTO orders (user_id, total_amount, status, completed_at) VALUES (?, ?, ?, ?)",
        orders,
    )
    conn.commit()
    return conn


def main():
    # Setup logging
    setup_logging(level="INFO")

    print("=" * 60)
    print("Ontology Engine - Basic Usage Example")
    print("=" * 60)

    print("\n1. Building sample database...")
    conn = build_database()
    adapter = SQLiteAdapter(DatabaseConfig(), connection=conn)
    store = InMemoryStore()

    print("2. Running extraction DAG...")
    service = DAGService(store, adapter)
    dag = service.start(project_id="shop", datasource_id="primary")
    print(f"   DAG {dag.id}: {dag.status.value}")
    for node in dag.ordered_nodes():
        print(f"   - {node.node_name.value:<24} {node.status.value}")

    print("\n3. Relationship candidates:")
    workflow_service = RelationshipWorkflowService(store, adapter)
    grouped = workflow_service.get_candidates_grouped("primary")
    for candidate in grouped.confirmed:
        print(f"   accepted  {candidate.pair_key} ({candidate.cardinality.value})")
    for candidate in grouped.needs_review:
        print(f"   review    {candidate.pair_key} confidence={candidate.confidence:.2f}")

    print("\n4. Ontology:")
    ontology = store.get_active_ontology("shop")
    print(ontology.to_yaml())

    conn.close()


if __name__ == "__main__":
    main()
