"""
Unit Tests for Extraction Data Models
"""
import pytest
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ontology_engine.models import (
    DAGStatus,
    DAGNodeStatus,
    DAGNodeName,
    OntologyDAG,
    WorkflowState,
    OntologyWorkflow,
    WorkflowEntityStatus,
    WorkflowEntityState,
    WorkflowEntityType,
    WorkflowQuestion,
    ColumnScanData,
    ClassificationPath,
    ColumnFeatures,
    TimestampFeatures,
    EnumFeatures,
    IdentifierFeatures,
    MonetaryFeatures,
    EnumCategory,
    FeaturePhase,
    FeatureExtractionProgress,
    ProvenanceSource,
    ColumnMetadata,
    RelationshipCandidate,
    DetectionMethod,
    CandidateStatus,
    Ontology,
    GlossaryTerm,
    OntologyEntity,
    global_entity_key,
    table_entity_key,
    column_entity_key,
)
from ontology_engine.utils import InvalidTransitionError, ValidationError


class TestOntologyDAG:
    """Tests for the extraction DAG model"""

    @pytest.fixture
    def dag(self):
        return OntologyDAG.create("proj-1", "ds-1", "fp-1")

    def test_create_has_nine_pending_nodes(self, dag):
        nodes = dag.ordered_nodes()
        assert len(nodes) == 9
        assert [n.node_order for n in nodes] == list(range(1, 10))
        assert nodes[0].node_name == DAGNodeName.ENTITY_DISCOVERY
        assert nodes[-1].node_name == DAGNodeName.GLOSSARY_ENRICHMENT
        assert all(n.status == DAGNodeStatus.PENDING for n in nodes)
        assert all(n.dag_id == dag.id for n in nodes)

    def test_next_runnable_skips_done_nodes(self, dag):
        dag.get_node(DAGNodeName.ENTITY_DISCOVERY).status = DAGNodeStatus.COMPLETED
        dag.get_node(DAGNodeName.ENTITY_ENRICHMENT).status = DAGNodeStatus.SKIPPED

        assert dag.next_runnable_node().node_name == DAGNodeName.FK_DISCOVERY

    def test_can_start_requires_predecessors(self, dag):
        fk = dag.get_node(DAGNodeName.FK_DISCOVERY)
        assert not dag.can_start_node(fk)

        dag.get_node(DAGNodeName.ENTITY_DISCOVERY).status = DAGNodeStatus.COMPLETED
        dag.get_node(DAGNodeName.ENTITY_ENRICHMENT).status = DAGNodeStatus.COMPLETED
        assert dag.can_start_node(fk)

    def test_node_reset(self, dag):
        node = dag.get_node(DAGNodeName.ENTITY_DISCOVERY)
        node.status = DAGNodeStatus.FAILED
        node.retry_count = 2
        node.error_message = "boom"
        node.completed_fingerprint = "fp-1"

        node.reset()

        assert node.status == DAGNodeStatus.PENDING
        assert node.retry_count == 0
        assert node.error_message is None
        assert node.completed_fingerprint is None

    def test_dict_round_trip(self, dag):
        dag.status = DAGStatus.RUNNING
        dag.current_node = DAGNodeName.FK_DISCOVERY
        restored = OntologyDAG.from_dict(dag.to_dict())

        assert restored.id == dag.id
        assert restored.status == DAGStatus.RUNNING
        assert restored.current_node == DAGNodeName.FK_DISCOVERY
        assert len(restored.nodes) == 9

    def test_terminal_statuses(self):
        assert DAGStatus.COMPLETED.is_terminal
        assert DAGStatus.CANCELLED.is_terminal
        assert not DAGStatus.RUNNING.is_terminal


class TestWorkflowStateMachine:
    """Tests for workflow-level transitions"""

    def test_happy_path(self):
        workflow = OntologyWorkflow(project_id="p", datasource_id="d")
        workflow.transition_to(WorkflowState.RUNNING)
        assert workflow.started_at is not None

        workflow.transition_to(WorkflowState.AWAITING_INPUT)
        workflow.transition_to(WorkflowState.COMPLETED)
        assert workflow.completed_at is not None

    def test_restart_from_terminal(self):
        workflow = OntologyWorkflow(project_id="p", datasource_id="d", state=WorkflowState.FAILED)
        workflow.transition_to(WorkflowState.PENDING)
        assert workflow.state == WorkflowState.PENDING

    @pytest.mark.parametrize("start,target", [
        (WorkflowState.PENDING, WorkflowState.COMPLETED),
        (WorkflowState.PAUSED, WorkflowState.COMPLETED),
        (WorkflowState.COMPLETED, WorkflowState.RUNNING),
    ])
    def test_rejected_transitions(self, start, target):
        workflow = OntologyWorkflow(project_id="p", datasource_id="d", state=start)
        with pytest.raises(InvalidTransitionError):
            workflow.transition_to(target)
        assert workflow.state == start


class TestEntityStateModel:
    """Tests for per-entity state model"""

    def test_entity_keys(self):
        assert global_entity_key() == ""
        assert table_entity_key("orders") == "orders"
        assert column_entity_key("orders", "status") == "orders.status"

    def test_table_and_column_names(self):
        state = WorkflowEntityState(
            project_id="p", workflow_id="w",
            entity_type=WorkflowEntityType.COLUMN, entity_key="orders.status",
        )
        assert state.table_name == "orders"
        assert state.column_name == "status"

    def test_status_transitions(self):
        assert WorkflowEntityStatus.PENDING.can_transition_to(WorkflowEntityStatus.SCANNING)
        assert WorkflowEntityStatus.NEEDS_INPUT.can_transition_to(WorkflowEntityStatus.ANALYZING)
        assert WorkflowEntityStatus.COMPLETE.can_transition_to(WorkflowEntityStatus.ANALYZING)
        assert WorkflowEntityStatus.SCANNED.can_transition_to(WorkflowEntityStatus.FAILED)
        assert not WorkflowEntityStatus.PENDING.can_transition_to(WorkflowEntityStatus.COMPLETE)
        assert not WorkflowEntityStatus.FAILED.can_transition_to(WorkflowEntityStatus.ANALYZING)

    def test_question_hash_depends_on_category_and_text(self):
        first = WorkflowQuestion(text="What does status 3 mean?", category="enum")
        second = WorkflowQuestion(text="What does status 3 mean?", category="enum", priority=1)
        other = WorkflowQuestion(text="What does status 3 mean?", category="general")

        assert first.content_hash == second.content_hash
        assert first.content_hash != other.content_hash

    def test_enum_candidate_rule(self):
        assert ColumnScanData.enum_candidate(5, 1000)
        assert not ColumnScanData.enum_candidate(51, 100000)
        assert not ColumnScanData.enum_candidate(10, 100)
        assert not ColumnScanData.enum_candidate(0, 100)


class TestColumnFeatures:
    """Tests for the path-tagged feature union"""

    def test_allowed_variant(self):
        features = ColumnFeatures(column_id="c1", classification_path=ClassificationPath.NUMERIC)
        features.set_path_features(MonetaryFeatures(currency_unit="cents"))

        assert features.monetary_features is not None
        assert features.identifier_features is None

    def test_disallowed_variant_rejected(self):
        features = ColumnFeatures(column_id="c1", classification_path=ClassificationPath.TIMESTAMP)
        with pytest.raises(ValidationError):
            features.set_path_features(EnumFeatures())

    def test_json_path_carries_no_variant(self):
        features = ColumnFeatures(column_id="c1", classification_path=ClassificationPath.JSON)
        with pytest.raises(ValidationError):
            features.set_path_features(IdentifierFeatures())
        features.set_path_features(None)
        assert features.path_features is None

    def test_to_dict_has_every_variant_key(self):
        features = ColumnFeatures(column_id="c1", classification_path=ClassificationPath.TIMESTAMP)
        features.set_path_features(TimestampFeatures(is_audit_field=True))
        data = features.to_dict()

        assert data["timestamp_features"]["is_audit_field"] is True
        for key in ("boolean_features", "enum_features", "identifier_features", "monetary_features"):
            assert data[key] is None

    def test_enum_category_terminal(self):
        assert EnumCategory.TERMINAL_SUCCESS.is_terminal
        assert not EnumCategory.IN_PROGRESS.is_terminal

    def test_progress_totals_published_on_start(self):
        progress = FeatureExtractionProgress()
        assert progress.get_phase(FeaturePhase.ENUM_ANALYSIS).total_items is None

        progress.start_phase(FeaturePhase.ENUM_ANALYSIS, 4)
        progress.advance(FeaturePhase.ENUM_ANALYSIS, "orders.status")

        assert progress.current_phase == FeaturePhase.ENUM_ANALYSIS
        assert progress.percentage == 25


class TestColumnMetadataMerge:
    """Tests for provenance-aware merging"""

    @pytest.fixture
    def metadata(self):
        return ColumnMetadata(project_id="p", table_name="orders", column_name="status")

    def test_merge_reports_changed_fields(self, metadata):
        changed = metadata.merge({"description": "Order state", "role": None}, ProvenanceSource.INFERENCE)

        assert changed == ["description"]
        assert metadata.source_of("description") == ProvenanceSource.INFERENCE
        assert metadata.role is None

    def test_inference_cannot_overwrite_manual(self, metadata):
        metadata.merge({"description": "Set by a person"}, ProvenanceSource.MANUAL)
        changed = metadata.merge({"description": "Guessed"}, ProvenanceSource.INFERENCE)

        assert changed == []
        assert metadata.description == "Set by a person"

    def test_manual_overwrites_mcp(self, metadata):
        metadata.merge({"purpose": "enum"}, ProvenanceSource.MCP)
        assert metadata.merge({"purpose": "text"}, ProvenanceSource.MANUAL) == ["purpose"]

    def test_unknown_field_rejected(self, metadata):
        with pytest.raises(KeyError):
            metadata.merge({"table_name": "other"}, ProvenanceSource.MANUAL)

    def test_merge_features(self, metadata):
        features = ColumnFeatures(
            column_id="c1",
            classification_path=ClassificationPath.ENUM,
            description="Order lifecycle state",
            confidence=0.8,
        )
        features.set_path_features(EnumFeatures(is_state_machine=True))

        changed = metadata.merge_features(features)

        assert "features" in changed
        assert metadata.classification_path == "enum"
        assert metadata.features["enum_features"]["is_state_machine"] is True
        assert metadata.confidence == 0.8
        assert metadata.key == "orders.status"


class TestRelationshipCandidate:
    """Tests for the candidate model"""

    def test_keys_and_clamping(self):
        candidate = RelationshipCandidate(
            datasource_id="ds", source_table="orders", source_column="user_id",
            target_table="users", target_column="id",
            detection_method=DetectionMethod.VALUE_MATCH, confidence=1.7,
        )
        assert candidate.pair_key == "orders.user_id->users.id"
        assert candidate.confidence == 1.0

        candidate.set_confidence(-0.2)
        assert candidate.confidence == 0.0

    def test_needs_review(self):
        candidate = RelationshipCandidate(
            datasource_id="ds", source_table="a", source_column="b_id",
            target_table="b", target_column="id",
            detection_method=DetectionMethod.NAME_INFERENCE, is_required=True,
        )
        assert candidate.needs_review()

        candidate.status = CandidateStatus.ACCEPTED
        assert not candidate.needs_review()


class TestOntologyExport:
    """Tests for ontology export helpers"""

    def test_find_term_by_alias(self):
        ontology = Ontology(project_id="p", glossary=[
            GlossaryTerm(term="Customer", aliases=["Client", "Buyer"]),
        ])
        assert ontology.find_term("buyer").term == "Customer"
        assert ontology.find_term("vendor") is None

    def test_save_yaml(self, tmp_path):
        ontology = Ontology(project_id="p", domain_summary={"tables": 2})
        path = tmp_path / "ontology.yaml"
        ontology.save(str(path))

        content = path.read_text()
        assert "project_id: p" in content
        assert "tables: 2" in content

    def test_entity_soft_delete(self):
        entity = OntologyEntity(project_id="p", name="user")
        entity.soft_delete("merged into account")
        assert entity.is_deleted
        assert entity.deletion_reason == "merged into account"

        entity.restore()
        assert not entity.is_deleted
