"""Order sync: SyncJob state machine and orchestrator."""
