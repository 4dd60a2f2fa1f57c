"""Live tracing of indirect call sites.

The controller launches the debuggee, rebases every static call site to a
runtime breakpoint, then loops resume/stop until the process exits. At each
breakpoint hit the base register is read as a vtable pointer and the
vtable's method count is estimated from live memory. One Observation is
kept per distinct vtable pointer per call site.

The loop is strictly sequential: one debuggee, one outstanding request.
"""

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import TraceConfig
from .errors import LaunchError, SessionLostError
from .memory import ProcessMemory
from .rebase import RebaseResolver
from .vtable import estimate_method_count

logger = logging.getLogger(__name__)


class StopReason(enum.Enum):
    ENTRY = "entry"
    BREAKPOINT = "breakpoint"
    SIGNAL = "signal"
    EXCEPTION = "exception"
    EXITED = "exited"
    OTHER = "other"


@dataclass
class StopEvent:
    reason: StopReason
    address: int = 0
    description: str = ""


class DebugBackend:
    """Synchronous process control used by the controller.

    ``launch`` blocks until the first stop at the program entry point and
    raises ``LaunchError`` if the process cannot be started. ``resume``
    blocks until the next stop and raises ``SessionLostError`` if the
    debuggee can no longer be controlled. Reads return None on failure.
    """

    def launch(self) -> StopEvent:
        raise NotImplementedError

    def resume(self) -> StopEvent:
        raise NotImplementedError

    def add_breakpoint(self, address) -> bool:
        raise NotImplementedError

    def read_register(self, name) -> Optional[int]:
        raise NotImplementedError

    def read_memory(self, address, size) -> Optional[bytes]:
        raise NotImplementedError

    @property
    def ip(self) -> int:
        raise NotImplementedError

    def exit_code(self) -> Optional[int]:
        raise NotImplementedError

    def regions(self):
        raise NotImplementedError

    def quit(self):
        raise NotImplementedError

    def close(self):
        pass


class TraceState(enum.Enum):
    NOT_LAUNCHED = "not_launched"
    LAUNCHED = "launched"
    TRACING = "tracing"
    EXITED = "exited"


@dataclass
class Observation:
    vtable_ptr: int
    method_count: int
    target: Optional[int] = None
    hits: int = 1


@dataclass
class CallSiteRecord:
    call_site: object
    observations: List[Observation] = field(default_factory=list)
    _by_vtable: Dict[int, Observation] = field(default_factory=dict, repr=False)

    @property
    def address(self):
        return self.call_site.address

    def get(self, vtable_ptr):
        return self._by_vtable.get(vtable_ptr)

    def add(self, observation):
        if observation.vtable_ptr in self._by_vtable:
            return False
        self._by_vtable[observation.vtable_ptr] = observation
        self.observations.append(observation)
        return True

    @property
    def max_methods(self):
        return max((o.method_count for o in self.observations), default=0)

    @property
    def targets(self):
        seen = []
        for o in self.observations:
            if o.target and o.target not in seen:
                seen.append(o.target)
        return seen


class LiveCorrelationController:

    def __init__(self, debugger, call_sites, static_entry, config=None):
        self.debugger = debugger
        self.call_sites = list(call_sites)
        self.static_entry = static_entry
        self.config = config or TraceConfig()

        self.state = TraceState.NOT_LAUNCHED
        self.rebase = None
        self.memory = None
        self.breakpoints = {}
        self.failed_breakpoints = []
        self.records = {}
        self.exit_code = None
        self.iterations = 0
        self.hit_count = 0
        self.released = False
        self._observers = []

    # --- observers ---

    def add_observer(self, callback):
        """Register ``callback(controller, old_state, new_state)``."""
        self._observers.append(callback)
        return len(self._observers) - 1

    def remove_observer(self, index):
        self._observers[index] = None

    def _set_state(self, new_state):
        old_state = self.state
        self.state = new_state
        logger.debug(f"trace state {old_state.value} -> {new_state.value}")
        for callback in self._observers:
            if callback is None:
                continue
            try:
                callback(self, old_state, new_state)
            except Exception as e:
                logger.warning(f"Trace observer failed on {old_state.value} -> {new_state.value}: {e}")

    # --- transitions ---

    def launch(self):
        if self.state != TraceState.NOT_LAUNCHED:
            raise LaunchError(f"cannot launch from state {self.state.value}")

        logger.info("launching...")
        event = self.debugger.launch()
        logger.info(f"launch: {event.reason.value}")

        if event.reason == StopReason.EXITED:
            self.exit_code = self.debugger.exit_code()
            logger.info(f"process exited early, code={self.exit_code}")
            self._set_state(TraceState.EXITED)
            return event

        self._set_state(TraceState.LAUNCHED)
        return event

    def arm(self):
        """Rebase call sites and install one breakpoint per site."""
        if self.state != TraceState.LAUNCHED:
            raise LaunchError(f"cannot arm breakpoints from state {self.state.value}")

        runtime_ip = self.debugger.ip
        logger.info(f"stopped at runtime IP: 0x{runtime_ip:x}")
        self.rebase = RebaseResolver.from_entries(self.static_entry, runtime_ip)
        self.memory = ProcessMemory(self.debugger, self.debugger.regions(), self.config.pointer_width)

        logger.info(f"setting {len(self.call_sites)} breakpoints at runtime addresses...")
        self.breakpoints = {}
        for call in self.call_sites:
            runtime_addr = self.rebase.translate(call.address)
            if not self.debugger.add_breakpoint(runtime_addr):
                self.failed_breakpoints.append(runtime_addr)
                logger.warning(f"Failed to create breakpoint at 0x{runtime_addr:x} (file 0x{call.address:x})")
            self.breakpoints[runtime_addr] = call

        self._set_state(TraceState.TRACING)

    def step(self):
        """Resume once and handle the resulting stop. False once the process exited."""
        if self.state != TraceState.TRACING:
            return False

        self.iterations += 1
        try:
            event = self.debugger.resume()
        except SessionLostError:
            self._set_state(TraceState.EXITED)
            raise

        if event.reason == StopReason.EXITED:
            self.exit_code = self.debugger.exit_code()
            logger.info(f"process exited, code={self.exit_code}")
            self._set_state(TraceState.EXITED)
            return False

        self.handle_stop(event)
        return True

    def handle_stop(self, event):
        runtime_ip = event.address or self.debugger.ip
        call = self.breakpoints.get(runtime_ip)
        if call is None:
            if event.reason in (StopReason.SIGNAL, StopReason.EXCEPTION):
                logger.warning(f"Process stopped due to {event.reason.value}: {event.description}. Auto-continuing...")
            else:
                logger.debug(f"Ignoring stop at 0x{runtime_ip:x} ({event.reason.value})")
            return None

        vtable_ptr = self.debugger.read_register(call.base_register)
        if not vtable_ptr:
            # receiver not constructed yet, or register unreadable
            return None

        record = self.records.get(call.address)
        if record is None:
            record = self.records[call.address] = CallSiteRecord(call)

        existing = record.get(vtable_ptr)
        if existing is not None:
            existing.hits += 1
            return None

        method_count = estimate_method_count(vtable_ptr, self.config.max_scan_bytes, self.memory,
                                             self.config.header_size)
        target = None
        if self.config.resolve_targets:
            target = self.memory.read_pointer(vtable_ptr + call.offset)

        observation = Observation(vtable_ptr, method_count, target)
        record.add(observation)
        self.hit_count += 1
        logger.info(f"HIT {self.hit_count}: file=0x{call.address:x} vtable=0x{vtable_ptr:x} "
                    f"methods={method_count} offset={call.offset:#x}")
        return observation

    def _budget_exhausted(self, started):
        if self.config.max_iterations is not None and self.iterations >= self.config.max_iterations:
            logger.warning(f"Iteration budget of {self.config.max_iterations} reached, stopping trace")
            return True
        if self.config.time_budget is not None and time.monotonic() - started >= self.config.time_budget:
            logger.warning(f"Time budget of {self.config.time_budget}s reached, stopping trace")
            return True
        return False

    def run(self):
        """Launch, arm and trace until the process exits or a budget runs out.

        Budgets are checked between stops; a ``resume`` that never returns is
        not interrupted.
        """
        if not self.call_sites:
            logger.info("no call sites to trace")
            return self.records

        if self.state == TraceState.NOT_LAUNCHED:
            self.launch()
        if self.state == TraceState.EXITED:
            return self.records
        if self.state == TraceState.LAUNCHED:
            self.arm()

        logger.info(f"--- tracing call [{self.config.base_register}...] ---")
        started = time.monotonic()
        while self.state == TraceState.TRACING:
            if self._budget_exhausted(started):
                self.quit()
                break
            self.step()
        return self.records

    def quit(self):
        if self.state == TraceState.EXITED:
            return
        if self.state != TraceState.NOT_LAUNCHED:
            self.debugger.quit()
        self._set_state(TraceState.EXITED)

    def release(self):
        """Tear the debug session down; required before types are synthesized."""
        if self.released:
            return
        if self.state in (TraceState.LAUNCHED, TraceState.TRACING):
            self.quit()
        self.debugger.close()
        self.released = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    @property
    def observation_count(self):
        return sum(len(r.observations) for r in self.records.values())
