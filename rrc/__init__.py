"""Release Rollout Controller (RRC).

Single-process controller that replaces an ad-hoc build/tag/push/deploy
shell sequence with one coordinating state machine:
 - artifact resolution (source revision -> image digest)
 - rollout planning under max-unavailable / max-surge budgets
 - health gating of newly created replicas
 - retry, pause/resume, cancellation and rollback

Everything talks to the outside world through narrow seams (registry client,
workload handle, health target) so the core stays small and testable.
"""
