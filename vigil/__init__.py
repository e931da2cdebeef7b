"""
Vigil — Agent Runtime Gateway

Keeps a conversational agent resident on one host. The gateway owns a single
exclusive control-plane listener, mediates every model call and tool
invocation the agent makes, and wakes the agent on a schedule.

Layers (bottom to top):
    1. Session store (durable transcripts + per-session state)
    2. Workspace contract (typed, capability-checked agent files)
    3. Context assembler (pruning + compaction with memory flush)
    4. Credential/model router (profile rotation, fallback chains)
    5. Tool broker (policy, sandbox, approval gate)
    6. Agent loop executor (bounded model/tool state machine)
    7. Scheduler (heartbeat + cron)
    8. Gateway daemon (listener, dispatch, supervision)
"""

__version__ = "0.1.0"
