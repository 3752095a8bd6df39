"""FilOps agents.

This package contains the autonomous agents that keep distributed storage
replication compliant with a declarative policy, and the machinery that
mediates between automatic and human-approved remediation.

High-level architecture
-----------------------

- **Policy validation**: a pure validator over policy documents that reports
  schema errors, warnings and typed conflicts (budget, region, provider, sla).
- **Action lifecycle**: a state machine for remediation actions
  (proposed -> approved -> executing -> completed/failed, or rejected) whose
  execution step calls an external deal-execution collaborator exactly once.
- **Compliance loop**: one periodic task per running replica-balance agent
  that computes replication deficits and proposes bounded remediation.
- **Agent registry**: owns agent records, start/pause/resume/stop
  transitions, heartbeat staleness monitoring and error escalation.

Core subpackages
----------------

- ``filops_agents.core``: settings, logging and the error taxonomy.
- ``filops_agents.agent_core``: the four subsystems above plus the
  persistence, event and integration contracts they depend on.

Most integrations should use ``filops_agents.agent_core.service.AgentService``
built through ``filops_agents.agent_core.factory``.
"""
