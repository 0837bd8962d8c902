"""Peer Discovery Reconciler (PDR).

Keeps a transport layer informed about the live members of a dynamic service:
 - periodic polling of a resolver (DNS, Kubernetes endpoints, docker labels, static)
 - add/remove notifications diffed against the tracked endpoints
 - per-endpoint reconnect backoff with permanent exclusion after repeated fast failures
"""