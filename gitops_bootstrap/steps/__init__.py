"""
Bootstrap steps, executed in order by the orchestrator.

Each module exposes ``main(ctx)`` taking a ``BootstrapContext`` and
optionally returning a dict of details for the status file.
"""

STEPS = [
    "01_wait_cluster",
    "02_install_gitops",
    "03_certificate_authority",
    "04_core_services",
    "05_cluster_params",
    "06_ingress",
    "07_ingress_ip",
    "08_core_appset",
    "09_vault",
    "10_addons",
]
