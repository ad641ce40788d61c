"""
DAG Service
Runs the nine extraction nodes for a (project, datasource) pair

One instance owns a DAG at a time through a lease (owner_id + last_heartbeat)
that is claimed and renewed with compare-and-swap in the store. A lease whose
heartbeat is older than the staleness window may be taken over by any instance,
which then resumes from the first node that is not done.
"""
from __future__ import annotations

import random
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..adapters.base import BaseDatabaseAdapter
from ..config import SystemConfig
from ..llm_client.structured import StructuredModelClient
from ..models import (
    DAGNode,
    DAGNodeName,
    DAGNodeProgress,
    DAGNodeStatus,
    DAGStatus,
    OntologyDAG,
)
from ..persistence.base import OntologyStore
from ..utils import (
    Heartbeat,
    LeaseError,
    NotFoundError,
    OntologyEngineError,
    OntologyMetrics,
    ValidationError,
    get_logger,
    get_metrics_collector,
    log_context,
    utc_now,
)
from .nodes import NodeContext, NodeExecutor, default_nodes

logger = get_logger(__name__)


@dataclass
class _LocalRun:
    """Per-DAG state held by the owning instance"""
    cancel: threading.Event = field(default_factory=threading.Event)
    lease_lost: threading.Event = field(default_factory=threading.Event)
    heartbeat: Optional[Heartbeat] = None


class DAGService:
    """
    Creates, resumes and runs extraction DAGs

    Usage:
        service = DAGService(store, adapter, config, client=structured_client)
        dag = service.start(project_id, datasource_id)
        status = service.get_status(project_id, datasource_id)
    """

    def __init__(
        self,
        store: OntologyStore,
        adapter: BaseDatabaseAdapter,
        config: Optional[SystemConfig] = None,
        client: Optional[StructuredModelClient] = None,
        instance_id: Optional[str] = None,
        nodes: Optional[Dict[DAGNodeName, NodeExecutor]] = None,
        background: bool = False,
    ):
        self.store = store
        self.adapter = adapter
        self.config = config or SystemConfig()
        self.client = client
        self.instance_id = instance_id or f"instance-{uuid.uuid4().hex[:12]}"
        self.nodes = nodes or default_nodes()
        get_metrics_collector().configure(self.config.metrics)
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="dag") if background else None
        self._runs: Dict[str, _LocalRun] = {}
        self._lock = threading.Lock()

    # Exposed operations

    def start(self, project_id: str, datasource_id: str) -> OntologyDAG:
        """
        Create or resume the extraction DAG for a datasource.

        Active DAGs are taken over only when their lease is stale. A failed DAG
        resumes from its failed node; completed or cancelled DAGs are replaced.
        """
        schema = self.adapter.get_schema(force_refresh=True)
        fingerprint = schema.fingerprint()

        dag = self.store.get_latest_dag(project_id, datasource_id)
        if dag is None or dag.status in (DAGStatus.COMPLETED, DAGStatus.CANCELLED):
            dag = self.store.create_dag(OntologyDAG.create(project_id, datasource_id, fingerprint))
            logger.info(
                "Created extraction DAG",
                extra={"extra_fields": {"dag_id": dag.id, "datasource_id": datasource_id}}
            )
        elif dag.id in self._runs:
            raise ValidationError(f"DAG {dag.id} is already running on this instance", field_name="dag_id")

        if not self.store.claim_dag_lease(dag.id, self.instance_id, self.config.dag.lease_stale_seconds):
            current = self.store.get_dag(dag.id)
            owner = current.owner_id if current else None
            raise LeaseError(f"DAG {dag.id} is owned by another instance", owner_id=owner)

        if dag.status == DAGStatus.FAILED:
            for node in dag.ordered_nodes():
                if node.status == DAGNodeStatus.FAILED:
                    node.reset()
            logger.info("Resuming failed DAG", extra={"extra_fields": {"dag_id": dag.id}})
        self._invalidate_stale_nodes(dag, fingerprint)

        entity_node = dag.get_node(DAGNodeName.ENTITY_DISCOVERY)
        if entity_node is not None and not entity_node.status.is_done:
            marked = self.store.mark_inference_entities_stale(project_id)
            logger.debug("Marked inferred entities stale", extra={"extra_fields": {"count": marked}})

        dag.status = DAGStatus.RUNNING
        dag.started_at = dag.started_at or utc_now()
        dag.completed_at = None
        self.store.update_dag(dag, owner_id=self.instance_id)

        run = _LocalRun()
        run.heartbeat = Heartbeat(
            f"dag:{dag.id}",
            lambda: self._beat(dag.id, run),
            self.config.dag.heartbeat_interval_seconds,
            on_lost=run.lease_lost.set,
        )
        with self._lock:
            self._runs[dag.id] = run
            OntologyMetrics.set_active_dags(len(self._runs))
        run.heartbeat.start()

        if self._executor is not None:
            self._executor.submit(self._run, dag.id)
        else:
            self._run(dag.id)
        return self._require_dag(dag.id)

    def cancel(self, dag_id: str) -> OntologyDAG:
        """
        Request cooperative cancellation; the DAG stops at the next node boundary.

        A DAG owned by another instance gets a stored cancel request that its
        owner picks up on its next heartbeat or node boundary. An unowned DAG
        is marked cancelled directly.
        """
        dag = self._require_dag(dag_id)
        if dag.status.is_terminal:
            return dag
        with self._lock:
            run = self._runs.get(dag_id)
        if run is not None:
            run.cancel.set()
            logger.info("Cancellation requested", extra={"extra_fields": {"dag_id": dag_id}})
            return self._require_dag(dag_id)
        dag = self.store.request_dag_cancel(dag_id)
        logger.info(
            "Cancellation recorded",
            extra={"extra_fields": {"dag_id": dag_id, "owner_id": dag.owner_id, "status": dag.status.value}}
        )
        return dag

    def heartbeat(self, dag_id: str) -> bool:
        """Renew the lease; False once another instance owns the DAG"""
        return self.store.heartbeat_dag(dag_id, self.instance_id)

    def get_status(self, project_id: str, datasource_id: str) -> OntologyDAG:
        dag = self.store.get_latest_dag(project_id, datasource_id)
        if dag is None:
            raise NotFoundError(f"no extraction DAG for datasource {datasource_id}")
        return dag

    def delete(self, project_id: str, datasource_id: str) -> Dict[str, int]:
        """
        Remove extraction output for a project.

        Manually created entities survive. Refused while a DAG is running.
        """
        for dag in self.store.list_dags(project_id):
            if dag.status == DAGStatus.RUNNING:
                raise ValidationError(f"DAG {dag.id} is still running", field_name="project_id")
        counts = {
            "dags": self.store.delete_dags(project_id),
            "workflows": self.store.delete_workflows(project_id),
            "candidates": self.store.delete_candidates(datasource_id),
            "entities": self.store.delete_inference_entities(project_id),
            "ontologies": self.store.delete_ontologies(project_id),
        }
        logger.info(
            "Deleted extraction output",
            extra={"extra_fields": {"project_id": project_id, **counts}}
        )
        return counts

    def shutdown(self) -> None:
        """Stop every local DAG at its next node boundary"""
        with self._lock:
            runs = list(self._runs.values())
        for run in runs:
            run.cancel.set()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        for run in runs:
            if run.heartbeat is not None:
                run.heartbeat.stop()

    # Execution

    def _run(self, dag_id: str) -> None:
        run = self._runs[dag_id]
        dag = self._require_dag(dag_id)
        with log_context(project_id=dag.project_id, dag_id=dag_id):
            try:
                self._execute(dag_id, run)
            except LeaseError as e:
                run.lease_lost.set()
                logger.warning("Lease lost, write refused", extra={"extra_fields": {"owner_id": e.owner_id}})
            except Exception:
                logger.error("DAG execution crashed", exc_info=True)
                raise
            finally:
                if run.heartbeat is not None:
                    run.heartbeat.stop()
                if not run.lease_lost.is_set():
                    self.store.release_dag_lease(dag_id, self.instance_id)
                with self._lock:
                    self._runs.pop(dag_id, None)
                    OntologyMetrics.set_active_dags(len(self._runs))

    def _execute(self, dag_id: str, run: _LocalRun) -> None:
        while True:
            dag = self._require_dag(dag_id)
            if run.lease_lost.is_set():
                logger.warning("Lease lost, stopping without further writes",
                               extra={"extra_fields": {"dag_id": dag_id}})
                return
            if run.cancel.is_set() or dag.cancel_requested:
                self._finish(dag, DAGStatus.CANCELLED)
                return

            node = dag.next_runnable_node()
            if node is None:
                self._finish(dag, DAGStatus.COMPLETED)
                return
            with log_context(node=node.node_name.value):
                if not self._run_node(dag, node, run):
                    return

    def _run_node(self, dag: OntologyDAG, node: DAGNode, run: _LocalRun) -> bool:
        """Run one node with retries; returns False when the DAG must stop"""
        executor = self.nodes[node.node_name]
        ctx = NodeContext(
            project_id=dag.project_id,
            datasource_id=dag.datasource_id,
            dag=dag,
            store=self.store,
            adapter=self.adapter,
            config=self.config,
            client=self.client,
            report=self._reporter(dag.id, node),
            is_cancelled=run.cancel.is_set,
            cancel_event=run.cancel,
        )

        dag.current_node = node.node_name
        if executor.should_skip(ctx):
            node.status = DAGNodeStatus.SKIPPED
            node.completed_at = utc_now()
            node.completed_fingerprint = dag.schema_fingerprint
            self.store.update_dag(dag, owner_id=self.instance_id)
            OntologyMetrics.record_node(node.node_name.value, 0.0, node.status.value)
            logger.info(f"Skipped node {node.node_name.value}")
            return True

        node.status = DAGNodeStatus.RUNNING
        node.started_at = utc_now()
        node.error_message = None
        self.store.update_dag(dag, owner_id=self.instance_id)

        while True:
            start = time.time()
            try:
                summary = executor.execute(ctx)
            except OntologyEngineError as e:
                if isinstance(e, LeaseError) and not self._owns(dag.id):
                    # Another instance took over; it re-runs this node
                    run.lease_lost.set()
                    return False
                duration = time.time() - start
                node.retry_count += 1
                node.error_message = e.message
                OntologyMetrics.record_error(type(e).__name__, e.category.value)
                if not e.recoverable or node.retry_count >= self.config.dag.max_node_retries:
                    self._fail(dag, node, e.message, duration)
                    return False
                OntologyMetrics.record_node_retry(node.node_name.value)
                logger.warning(
                    f"Node {node.node_name.value} failed, retrying",
                    extra={"extra_fields": {"retry_count": node.retry_count, "error": e.message}}
                )
                self.store.update_node(dag.id, node, owner_id=self.instance_id)
                if run.cancel.wait(self._backoff(node.retry_count)):
                    # Cancelled while waiting; the node did not complete
                    node.reset()
                    self._finish(dag, DAGStatus.CANCELLED)
                    return False
                continue
            except Exception as e:
                self._fail(dag, node, str(e), time.time() - start)
                raise

            duration = time.time() - start
            if run.lease_lost.is_set():
                # The new owner re-runs this node
                return False
            if summary.get("interrupted"):
                # Stopped mid-node by cancellation; remaining work runs on resume
                node.reset()
                self._finish(dag, DAGStatus.CANCELLED)
                return False
            node.status = DAGNodeStatus.COMPLETED
            node.completed_at = utc_now()
            node.duration_ms = int(duration * 1000)
            node.error_message = None
            node.completed_fingerprint = dag.schema_fingerprint
            if node.progress.total == 0:
                node.progress = DAGNodeProgress(current=1, total=1, message="Complete")
            self.store.update_dag(dag, owner_id=self.instance_id)
            OntologyMetrics.record_node(node.node_name.value, duration, node.status.value)
            logger.info(
                f"Completed node {node.node_name.value}",
                extra={"extra_fields": {"duration_ms": node.duration_ms, **summary}}
            )
            return True

    # Helpers

    def _invalidate_stale_nodes(self, dag: OntologyDAG, fingerprint: str) -> List[DAGNodeName]:
        """Reset the first node completed under another schema, and every node after it"""
        reset: List[DAGNodeName] = []
        invalid = False
        for node in dag.ordered_nodes():
            if not invalid and node.status.is_done and node.completed_fingerprint not in (None, fingerprint):
                invalid = True
            if invalid and node.status != DAGNodeStatus.PENDING:
                node.reset()
                reset.append(node.node_name)
        if reset:
            logger.info(
                "Schema changed, re-running nodes",
                extra={"extra_fields": {"dag_id": dag.id, "nodes": [n.value for n in reset]}}
            )
        dag.schema_fingerprint = fingerprint
        return reset

    def _reporter(self, dag_id: str, node: DAGNode):
        lock = threading.Lock()

        def report(current: int, total: int, message: str) -> None:
            with lock:
                node.progress = DAGNodeProgress(current=current, total=total, message=message)
                self.store.update_node(dag_id, node, owner_id=self.instance_id)
        return report

    def _beat(self, dag_id: str, run: _LocalRun) -> bool:
        if not self.store.heartbeat_dag(dag_id, self.instance_id):
            return False
        dag = self.store.get_dag(dag_id)
        if dag is not None and dag.cancel_requested and not run.cancel.is_set():
            logger.info("Cancellation requested by another instance", extra={"extra_fields": {"dag_id": dag_id}})
            run.cancel.set()
        return True

    def _owns(self, dag_id: str) -> bool:
        dag = self.store.get_dag(dag_id)
        return dag is not None and dag.owner_id == self.instance_id

    def _backoff(self, attempt: int) -> float:
        cfg = self.config.dag
        delay = min(cfg.retry_initial_delay * (cfg.retry_multiplier ** (attempt - 1)), cfg.retry_max_delay)
        return delay * (1 + random.uniform(-cfg.retry_jitter, cfg.retry_jitter))

    def _fail(self, dag: OntologyDAG, node: DAGNode, message: str, duration: float) -> None:
        node.status = DAGNodeStatus.FAILED
        node.error_message = message
        node.duration_ms = int(duration * 1000)
        OntologyMetrics.record_node(node.node_name.value, duration, node.status.value)
        logger.error(
            f"Node {node.node_name.value} failed",
            extra={"extra_fields": {"retry_count": node.retry_count, "error": message}}
        )
        self._finish(dag, DAGStatus.FAILED)

    def _finish(self, dag: OntologyDAG, status: DAGStatus) -> None:
        dag.status = status
        dag.completed_at = utc_now()
        if status == DAGStatus.COMPLETED:
            dag.current_node = None
        self.store.update_dag(dag, owner_id=self.instance_id)
        logger.info(f"DAG {status.value}", extra={"extra_fields": {"dag_id": dag.id}})

    def _require_dag(self, dag_id: str) -> OntologyDAG:
        dag = self.store.get_dag(dag_id)
        if dag is None:
            raise NotFoundError(f"DAG {dag_id} not found")
        return dag
