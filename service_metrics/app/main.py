"""
Metrics service: AI code assistant metric calculation over daily usage records.
"""

import asyncio
from dataclasses import replace
from typing import Any, Dict, List, Optional

from fastapi import Body, Query

from shared.base_service import BaseService
from shared.errors import CalculationTimeoutError, EMSException, QueryError
from shared.logging import set_scope_context

from .peers import InMemoryMembershipDirectory, MembershipDirectory, MetricScopeBuilder
from .rules.catalog import build_default_engine
from .rules.models import MetricsResponse, UsageQuery, UsageResponse, UsageStats, UsageStatsResponse
from .rules.params import parse_usage_query
from .store.base import RecordStore
from .store.memory import InMemoryRecordStore
from .store.postgres import PostgresRecordStore


class MetricsService(BaseService):
    """Metrics service implementation."""

    def __init__(self, store: Optional[RecordStore] = None,
                 membership: Optional[MembershipDirectory] = None):
        super().__init__("metrics", 8012)

        self.store = store if store is not None else self._create_store()
        self.membership = membership if membership is not None else InMemoryMembershipDirectory()
        self.scope_builder = MetricScopeBuilder(
            self.membership,
            default_interval=self.config.default_interval
        )
        self.engine = build_default_engine(
            self.store,
            metrics=self.metrics,
            concurrent=self.config.concurrent_rules
        )

        self._setup_metrics_routes()

    def _create_store(self) -> RecordStore:
        if self.config.record_store == "postgres":
            return PostgresRecordStore(
                self.config.postgres_dsn,
                min_size=self.config.postgres_min_pool_size,
                max_size=self.config.postgres_max_pool_size,
                command_timeout=self.config.postgres_command_timeout
            )
        return InMemoryRecordStore()

    def _setup_metrics_routes(self):
        """Set up metrics-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "metrics",
                "message": "EMS - Metrics Service",
                "version": "1.0.0",
                "capabilities": ["snapshot_metrics", "graph_metrics", "peer_comparison", "usage", "usage_stats"]
            }

        @self.app.get("/metrics/rules")
        async def list_rules():
            """List registered metric rules."""
            return {
                "rules": [
                    {
                        "rule_id": rule.rule_id,
                        "category": rule.category().name,
                        "priority": rule.category().priority,
                    }
                    for rule in self.engine.rules
                ],
                "stats": self.engine.get_engine_stats()
            }

        @self.app.post("/metrics/calculate", response_model=MetricsResponse)
        async def calculate_metrics(params: Dict[str, Any] = Body(...)):
            """Calculate metrics for a raw rule parameter payload."""
            metric_params = params.get("metricParams")
            if isinstance(metric_params, dict):
                organization_id = metric_params.get("organizationId")
                if isinstance(organization_id, str):
                    set_scope_context(organization_id=organization_id)
            return await self._calculate(params, "custom")

        @self.app.get(
            "/organizations/{organization_id}/members/{member_id}/metrics",
            response_model=MetricsResponse
        )
        async def member_metrics(
            organization_id: str,
            member_id: str,
            start_date: Optional[str] = Query(None, alias="startDate"),
            end_date: Optional[str] = Query(None, alias="endDate"),
            interval: Optional[str] = Query(None),
            tool_names: Optional[List[str]] = Query(None, alias="toolNames"),
        ):
            """Metrics for one member compared against peers sharing the member's title."""
            set_scope_context(organization_id=organization_id, member_id=member_id)
            params = await self.scope_builder.member_params(
                organization_id, member_id, start_date, end_date, interval, tool_names
            )
            if params is None:
                return MetricsResponse()
            return await self._calculate(params, "member")

        @self.app.get(
            "/organizations/{organization_id}/teams/{team_id}/metrics",
            response_model=MetricsResponse
        )
        async def team_metrics(
            organization_id: str,
            team_id: str,
            start_date: Optional[str] = Query(None, alias="startDate"),
            end_date: Optional[str] = Query(None, alias="endDate"),
            interval: Optional[str] = Query(None),
            tool_names: Optional[List[str]] = Query(None, alias="toolNames"),
        ):
            """Metrics for the accounts of a team's members."""
            set_scope_context(organization_id=organization_id)
            params = await self.scope_builder.team_params(
                organization_id, team_id, start_date, end_date, interval, tool_names
            )
            if params is None:
                return MetricsResponse()
            return await self._calculate(params, "team")

        @self.app.get("/organizations/{organization_id}/metrics", response_model=MetricsResponse)
        async def organization_metrics(
            organization_id: str,
            start_date: Optional[str] = Query(None, alias="startDate"),
            end_date: Optional[str] = Query(None, alias="endDate"),
            interval: Optional[str] = Query(None),
            tool_names: Optional[List[str]] = Query(None, alias="toolNames"),
        ):
            """Metrics for every account of an organization."""
            set_scope_context(organization_id=organization_id)
            params = await self.scope_builder.organization_params(
                organization_id, start_date, end_date, interval, tool_names
            )
            return await self._calculate(params, "organization")

        @self.app.get(
            "/organizations/{organization_id}/ai-code-assistant/usage",
            response_model=UsageResponse
        )
        async def organization_usage(
            organization_id: str,
            external_account_ids: Optional[List[str]] = Query(None, alias="externalAccountIds"),
            tool_name: Optional[str] = Query(None, alias="toolName"),
            start_date: Optional[str] = Query(None, alias="startDate"),
            end_date: Optional[str] = Query(None, alias="endDate"),
        ):
            """Daily records of an organization, oldest first."""
            set_scope_context(organization_id=organization_id)
            query = parse_usage_query(organization_id, external_account_ids, tool_name, start_date, end_date)
            return await self._usage(query)

        @self.app.get(
            "/organizations/{organization_id}/ai-code-assistant/usage/stats",
            response_model=UsageStatsResponse
        )
        async def organization_usage_stats(
            organization_id: str,
            external_account_ids: Optional[List[str]] = Query(None, alias="externalAccountIds"),
            tool_name: Optional[str] = Query(None, alias="toolName"),
            start_date: Optional[str] = Query(None, alias="startDate"),
            end_date: Optional[str] = Query(None, alias="endDate"),
        ):
            """Usage totals of an organization."""
            set_scope_context(organization_id=organization_id)
            query = parse_usage_query(organization_id, external_account_ids, tool_name, start_date, end_date)
            return await self._usage_stats(query)

        @self.app.get(
            "/organizations/{organization_id}/members/{member_id}/ai-code-assistant/usage",
            response_model=UsageResponse
        )
        async def member_usage(
            organization_id: str,
            member_id: str,
            tool_name: Optional[str] = Query(None, alias="toolName"),
            start_date: Optional[str] = Query(None, alias="startDate"),
            end_date: Optional[str] = Query(None, alias="endDate"),
        ):
            """Daily records of one member's accounts. Members without accounts get no records."""
            set_scope_context(organization_id=organization_id, member_id=member_id)
            query = parse_usage_query(organization_id, None, tool_name, start_date, end_date)
            account_ids = await self.scope_builder.member_account_ids(organization_id, member_id)
            if not account_ids:
                return UsageResponse()
            return await self._usage(replace(query, account_ids=tuple(account_ids)))

        @self.app.get(
            "/organizations/{organization_id}/members/{member_id}/ai-code-assistant/usage/stats",
            response_model=UsageStatsResponse
        )
        async def member_usage_stats(
            organization_id: str,
            member_id: str,
            tool_name: Optional[str] = Query(None, alias="toolName"),
            start_date: Optional[str] = Query(None, alias="startDate"),
            end_date: Optional[str] = Query(None, alias="endDate"),
        ):
            """Usage totals of one member's accounts. Members without accounts get zero totals."""
            set_scope_context(organization_id=organization_id, member_id=member_id)
            query = parse_usage_query(organization_id, None, tool_name, start_date, end_date)
            account_ids = await self.scope_builder.member_account_ids(organization_id, member_id)
            if not account_ids:
                return UsageStatsResponse(stats=UsageStats())
            return await self._usage_stats(replace(query, account_ids=tuple(account_ids)))

    async def _calculate(self, params: Dict[str, Any], scope: str) -> MetricsResponse:
        timeout = self.config.calculation_timeout_seconds
        try:
            if timeout:
                response = await asyncio.wait_for(self.engine.calculate_metrics(params), timeout)
            else:
                response = await self.engine.calculate_metrics(params)
        except asyncio.TimeoutError:
            self.metrics.increment_counter("metrics_calculations_total", scope=scope, status="timeout")
            raise CalculationTimeoutError(
                "metrics calculation timed out",
                {"timeout_seconds": timeout, "scope": scope}
            )
        except EMSException:
            self.metrics.increment_counter("metrics_calculations_total", scope=scope, status="error")
            raise

        self.metrics.increment_counter("metrics_calculations_total", scope=scope, status="success")
        return response

    async def _usage(self, query: UsageQuery) -> UsageResponse:
        try:
            records = await self.store.list_records(query)
        except EMSException:
            raise
        except Exception as e:
            self.logger.error("Failed to list usage records", organization_id=query.organization_id, error=str(e))
            raise QueryError("failed to get daily metrics", {"error": str(e)})
        return UsageResponse(metrics=[record.to_model() for record in records])

    async def _usage_stats(self, query: UsageQuery) -> UsageStatsResponse:
        try:
            stats = await self.store.usage_stats(query)
        except EMSException:
            raise
        except Exception as e:
            self.logger.error("Failed to compute usage stats", organization_id=query.organization_id, error=str(e))
            raise QueryError("failed to get usage stats", {"error": str(e)})
        return UsageStatsResponse(stats=stats)

    async def _check_dependencies(self) -> Dict[str, str]:
        return {"record_store": await self.store.check_health()}

    async def start(self):
        await self.store.start()
        self.logger.info(
            "Metrics service started",
            record_store=type(self.store).__name__,
            rules=len(self.engine.rules),
            concurrent=self.engine.concurrent
        )

    async def stop(self):
        await self.store.close()
        self.logger.info("Metrics service stopped")


def create_app(store: Optional[RecordStore] = None,
               membership: Optional[MembershipDirectory] = None):
    """Create metrics service application."""
    service = MetricsService(store=store, membership=membership)
    return service.app


if __name__ == "__main__":
    service = MetricsService()
    service.run()
