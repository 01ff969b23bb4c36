import asyncio
import logging
from typing import Protocol

from .commands import run_command
from .config import Settings
from .errors import ExecutorError

logger = logging.getLogger(__name__)

RELAY_REPORT_SQL = """
SELECT
  r.pokt_node_domain AS domain,
  r.date AS day,
  r.chain_id,
  COUNT(*) AS relays,
  COUNT(CASE WHEN is_error = TRUE AND error_type IS NOT NULL AND error_type <> "user" THEN error_type END) AS err_cnt,
  1 - (COUNT(CASE WHEN is_error = TRUE AND error_type IS NOT NULL AND error_type <> "user" THEN error_type END) / COUNT(*)) AS success_rate,
  AVG(relay_roundtrip_time) AS avg_total_latency,
  APPROX_QUANTILES(relay_roundtrip_time, 100)[OFFSET(95)] AS p95_latency,
  APPROX_QUANTILES(relay_roundtrip_time, 100)[OFFSET(99)] AS p99_latency
FROM `{table}` r
WHERE r.date = @date
  AND r.pokt_node_domain = @domain
GROUP BY r.pokt_node_domain, r.date, r.chain_id
ORDER BY r.date, r.chain_id
"""


class QueryExecutor(Protocol):
    async def run_report(self, domain: str, date: str) -> str:
        """Return the report as CSV text. Raises ExecutorError on failure."""


class BigQueryExecutor:
    """Runs the relay quality report through the `bq` CLI."""

    def __init__(self, settings: Settings):
        self.bq_bin = settings.bq_bin
        self.table = settings.bq_table
        self.timeout = settings.command_timeout_seconds

    def _argv(self, domain: str, date: str):
        return [
            self.bq_bin, "query",
            "--use_legacy_sql=false",
            "--format=csv",
            f"--parameter=domain:STRING:{domain}",
            f"--parameter=date:DATE:{date}",
            RELAY_REPORT_SQL.format(table=self.table),
        ]

    async def run_report(self, domain: str, date: str) -> str:
        logger.info("executor: running report for %s on %s", domain, date)
        try:
            result = await run_command(self._argv(domain, date), self.timeout)
        except asyncio.TimeoutError as exc:
            raise ExecutorError(f"BigQuery execution failed: timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise ExecutorError(f"BigQuery execution failed: {exc}") from exc
        if not result.ok:
            detail = (result.stderr or result.stdout).strip()[:500]
            raise ExecutorError(f"BigQuery execution failed: {detail}")
        if not result.stdout.strip():
            raise ExecutorError(f"No report data for {domain} on {date}")
        return result.stdout
