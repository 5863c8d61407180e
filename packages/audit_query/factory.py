"""
Data source factory: one AuditDataSource per registered entity type.
"""

from packages.audit_store import AuditLogRegistry
from packages.structured_logging import get_logger

from .compiler import AuditDataSource, FilterCompiler

logger = get_logger(__name__)


class AuditDataSourceFactory:
    """
    Creates and caches audit data sources for every audited entity type.

    Data sources are looked up by identifier ("audit-App-Entity-Order");
    identifiers carrying an item id ("audit-App-Entity-Order/123") resolve to
    their data source.
    """

    def __init__(
        self,
        registry: AuditLogRegistry,
        compiler: FilterCompiler | None = None,
        default_page_size: int = 50,
    ) -> None:
        self.registry = registry
        self.compiler = compiler or FilterCompiler()
        self.default_page_size = default_page_size
        self._cache: dict[str, AuditDataSource] | None = None

    def create_all(self) -> list[AuditDataSource]:
        """Create (or return cached) data sources for all registered entity types."""
        if self._cache is None:
            self._cache = {}
            for log in self.registry.logs():
                data_source = AuditDataSource(log, self.compiler, self.default_page_size)
                self._cache[data_source.identifier] = data_source
            logger.debug("audit_data_sources_created", count=len(self._cache))
        return list(self._cache.values())

    def create(self, entity_type: str) -> AuditDataSource | None:
        """Create a data source for one entity type; None if it is not audited."""
        log = self.registry.get(entity_type)
        if log is None:
            return None
        return AuditDataSource(log, self.compiler, self.default_page_size)

    def get(self, identifier: str) -> AuditDataSource | None:
        """
        Get a data source by identifier.

        Args:
            identifier: Data source identifier, optionally followed by "/<item id>"

        Returns:
            The data source, None if unknown
        """
        self.create_all()
        assert self._cache is not None

        if identifier in self._cache:
            return self._cache[identifier]

        if "/" in identifier:
            return self._cache.get(identifier.split("/", 1)[0])

        return None

    def clear_cache(self) -> None:
        """Clear the cached data sources."""
        self._cache = None
