"""
server_provisioner package
--------------------------
Resumable, dependency-ordered provisioning for dedicated game servers on
Linux hosts. Contains the step model, dependency graph, persistent state
store, executor, command runner, external collaborators (package manager,
Wine, file delivery, systemd, ufw) and the Aloft server recipe.
"""

__version__ = "0.1.0"
