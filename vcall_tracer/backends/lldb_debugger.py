"""LLDB implementation of the controller's debug back end (synchronous mode)."""

import logging

from ..controller import DebugBackend, StopEvent, StopReason
from ..errors import LaunchError, SessionLostError
from .lldb_image import collect_regions
from .lldb_support import import_lldb

logger = logging.getLogger(__name__)


class LldbDebugger(DebugBackend):

    def __init__(self, binary_path, args=(), working_directory=None, lldb_python_path=None):
        self.lldb = import_lldb(lldb_python_path)
        self.binary_path = str(binary_path)
        self.args = list(args)
        self.working_directory = working_directory

        self.debugger = None
        self.target = None
        self.process = None

    # --- helpers ---

    def is_process_effectively_dead(self):
        lldb = self.lldb
        if not self.process or not self.process.IsValid():
            return True
        state = self.process.GetState()
        return state in (lldb.eStateExited, lldb.eStateDetached, lldb.eStateInvalid, lldb.eStateCrashed)

    def _stopped_thread(self):
        lldb = self.lldb
        thread = self.process.GetSelectedThread()
        if thread and thread.IsValid() and thread.GetStopReason() != lldb.eStopReasonNone:
            return thread
        for i in range(self.process.GetNumThreads()):
            candidate = self.process.GetThreadAtIndex(i)
            if candidate.IsValid() and candidate.GetStopReason() != lldb.eStopReasonNone:
                self.process.SetSelectedThread(candidate)
                return candidate
        return thread if thread and thread.IsValid() else None

    def _stop_event(self):
        lldb = self.lldb
        state = self.process.GetState()
        if state == lldb.eStateExited:
            return StopEvent(StopReason.EXITED, description=self.process.GetExitDescription() or "")
        if state in (lldb.eStateDetached, lldb.eStateInvalid, lldb.eStateCrashed):
            raise SessionLostError(f"process state is {lldb.SBDebugger.StateAsCString(state)}")

        thread = self._stopped_thread()
        if thread is None:
            return StopEvent(StopReason.OTHER, description="no stopped thread")

        stop_reason = thread.GetStopReason()
        if stop_reason == lldb.eStopReasonBreakpoint:
            reason = StopReason.BREAKPOINT
        elif stop_reason == lldb.eStopReasonSignal:
            reason = StopReason.SIGNAL
        elif stop_reason == lldb.eStopReasonException:
            reason = StopReason.EXCEPTION
        else:
            reason = StopReason.OTHER
        pc = thread.GetFrameAtIndex(0).GetPC()
        return StopEvent(reason, pc, thread.GetStopDescription(256) or "")

    def _frame(self):
        thread = self.process.GetSelectedThread()
        if not thread or not thread.IsValid():
            return None
        frame = thread.GetFrameAtIndex(0)
        return frame if frame.IsValid() else None

    # --- DebugBackend ---

    def launch(self):
        lldb = self.lldb
        self.debugger = lldb.SBDebugger.Create()
        self.debugger.SetAsync(False)

        error = lldb.SBError()
        self.target = self.debugger.CreateTarget(self.binary_path, None, None, True, error)
        if not self.target or not self.target.IsValid():
            raise LaunchError(f"cant create target for {self.binary_path}: {error.GetCString()}")

        launch_info = lldb.SBLaunchInfo(self.args)
        launch_info.SetExecutableFile(lldb.SBFileSpec(self.binary_path), True)
        if self.working_directory:
            launch_info.SetWorkingDirectory(self.working_directory)
        launch_info.SetLaunchFlags(launch_info.GetLaunchFlags() | lldb.eLaunchFlagStopAtEntry)

        error = lldb.SBError()
        self.process = self.target.Launch(launch_info, error)
        if error.Fail() or not self.process or not self.process.IsValid():
            raise LaunchError(f"launch of {self.binary_path} failed: {error.GetCString()}")

        if self.is_process_effectively_dead():
            return self._stop_event()

        # The first stop is in the dynamic loader; run on to the program's own entry point.
        module = self.target.GetModuleAtIndex(0)
        entry = module.GetObjectFileEntryPointAddress().GetLoadAddress(self.target)
        if entry != lldb.LLDB_INVALID_ADDRESS and entry != self.ip:
            bp = self.target.BreakpointCreateByAddress(entry)
            error = self.process.Continue()
            self.target.BreakpointDelete(bp.GetID())
            if error.Fail():
                raise LaunchError(f"could not run to entry point 0x{entry:x}: {error.GetCString()}")
        return self._stop_event()

    def resume(self):
        error = self.process.Continue()
        if error.Fail():
            if self.is_process_effectively_dead() and self.process.GetState() == self.lldb.eStateExited:
                return self._stop_event()
            raise SessionLostError(f"Failed to continue process: {error.GetCString()}")
        return self._stop_event()

    def add_breakpoint(self, address):
        bp = self.target.BreakpointCreateByAddress(address)
        return bool(bp and bp.IsValid() and bp.GetNumLocations() > 0)

    def read_register(self, name):
        frame = self._frame()
        if frame is None:
            return None
        register = frame.FindRegister(name)
        if not register.IsValid():
            return None
        error = self.lldb.SBError()
        value = register.GetValueAsUnsigned(error, 0)
        return value if error.Success() else None

    def read_memory(self, address, size):
        error = self.lldb.SBError()
        data = self.process.ReadMemory(address, size, error)
        if not error.Success():
            return None
        return data

    @property
    def ip(self):
        frame = self._frame()
        return frame.GetPC() if frame is not None else 0

    def exit_code(self):
        if self.process and self.process.IsValid():
            return self.process.GetExitStatus()
        return None

    def regions(self):
        return collect_regions(self.lldb, self.target, load_addresses=True)

    def quit(self):
        if self.process and self.process.IsValid() and not self.is_process_effectively_dead():
            error = self.process.Kill()
            if error.Fail():
                logger.error(f"Failed to kill process: {error.GetCString()}")

    def close(self):
        if self.debugger is not None:
            self.lldb.SBDebugger.Destroy(self.debugger)
        self.debugger = None
        self.target = None
        self.process = None
