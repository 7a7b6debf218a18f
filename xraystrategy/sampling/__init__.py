"""Local and centralized trace sampling: rules, reservoirs, manifests and the daemon proxy."""