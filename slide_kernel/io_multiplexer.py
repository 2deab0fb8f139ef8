"""
Execution Multiplexer
=====================

Turns the iopub message stream of one execute_request into notebook outputs.

Message dispatch:
- stream         -> stream output (name + text)
- execute_result -> execute_result output (data bundle, execution count)
- display_data   -> display_data output
- error          -> error output (ename, evalue, traceback)
Everything else (status, execute_input, clear_output, ...) is ignored.

execute() returns only after the channel reports the request complete, never
merely after the last output message.
"""

from typing import Any, Dict, List, Optional

import nbformat
import structlog

from .errors import ExecutionNoActiveSession
from .kernel_channel import KernelChannel
from .notifications import Notifier
from .observability import get_tracer

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)


class ExecutionMultiplexer:
    """Collects the outputs of a single code submission."""

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or Notifier()

    async def execute(
        self,
        channel: Optional[KernelChannel],
        code: str,
        store_history: bool = True,
    ) -> List[Any]:
        if channel is None:
            self.notifier.error(ExecutionNoActiveSession.message)
            return []

        if not code or not code.strip():
            return []

        outputs: List[Any] = []
        with tracer.start_as_current_span("kernel.execute") as span:
            future = await channel.request_execute(code, store_history=store_history)
            span.set_attribute("kernel.msg_id", future.msg_id)

            async for msg in future:
                output = self._create_output(msg.get("msg_type"), msg.get("content") or {})
                if output is not None:
                    outputs.append(output)

            reply_status = (future.reply or {}).get("status")
            span.set_attribute("kernel.reply_status", reply_status or "")
            logger.debug(
                f"[KERNEL] Execution {future.msg_id} finished",
                status=reply_status,
                outputs=len(outputs),
            )
        return outputs

    def _create_output(self, msg_type: Optional[str], content: Dict[str, Any]) -> Optional[Any]:
        """
        Create nbformat output from message content.

        Args:
            msg_type: Type of message (stream, display_data, etc.)
            content: Message content dict

        Returns:
            nbformat output object or None
        """
        if msg_type == "stream":
            return nbformat.v4.new_output(
                "stream", name=content.get("name", "stdout"), text=content.get("text", "")
            )
        elif msg_type == "display_data":
            return nbformat.v4.new_output(
                "display_data",
                data=content.get("data", {}),
                metadata=content.get("metadata", {}),
            )
        elif msg_type == "execute_result":
            return nbformat.v4.new_output(
                "execute_result",
                data=content.get("data", {}),
                metadata=content.get("metadata", {}),
                execution_count=content.get("execution_count"),
            )
        elif msg_type == "error":
            return nbformat.v4.new_output(
                "error",
                ename=content.get("ename", ""),
                evalue=content.get("evalue", ""),
                traceback=content.get("traceback", []),
            )

        return None
