"""routesync: keeps a routing engine's route table in step with single-replica workloads.

Components:
 - watcher: list-then-watch of Deployments with periodic resync
 - handler: decides create/replace/delete per workload
 - admin_client: idempotent client for the routing engine's admin API
 - tracker: local cache of workload -> route
 - reconciler: orphan cleanup and startup recovery of the tracker
"""
