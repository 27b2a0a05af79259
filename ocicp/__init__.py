'''
copy OCI artifacts (manifests, blobs and, optionally, referrers) between registries

see `ocicp.cp` for the entry-point, and `ocicp.graph` for the underlying graph-copy primitives.
'''
