"""Agent core: registry, compliance loop, action lifecycle and policy engine.

Modules
-------

- ``agent_registry``: agent records, lifecycle transitions, heartbeat
  staleness monitoring and error escalation.
- ``runtime``: deficit computation, the replica-balance compliance loop and
  the keyed periodic scheduler.
- ``actions``: the action state machine and deal execution.
- ``policy``: document validation and the policy service.
- ``repos``: persistence contracts and the SQL implementation.
- ``integrations``: provider-selection and deal-execution clients.
- ``service`` / ``factory``: the application-facing facade and its wiring.
"""
