from __future__ import annotations


class PortAllocator:
    """Assigns each project the port ``base_port + project_id``.

    Project ids are never reused, so two projects can never collide and any
    process can recompute a project's port from its id alone. Ports are used
    sparsely; nothing is reclaimed when a project is deleted.
    """

    def __init__(self, base_port: int = 10000):
        self.base_port = base_port

    def allocate_port(self, project_id: int) -> int:
        return self.base_port + project_id
