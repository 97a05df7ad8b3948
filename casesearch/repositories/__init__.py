from casesearch.repositories.associations import InMemoryAssociationsRepository, PostgresAssociationsRepository
from casesearch.repositories.cases import InMemoryCasesRepository, PostgresCasesRepository
from casesearch.repositories.dlq_items import InMemoryDlqItemsRepository, PostgresDlqItemsRepository
from casesearch.repositories.persons import InMemoryPersonsRepository, PostgresPersonsRepository
from casesearch.repositories.records import InMemoryRecordsRepository, PostgresRecordsRepository

__all__ = [
    "InMemoryAssociationsRepository",
    "PostgresAssociationsRepository",
    "InMemoryCasesRepository",
    "PostgresCasesRepository",
    "InMemoryDlqItemsRepository",
    "PostgresDlqItemsRepository",
    "InMemoryPersonsRepository",
    "PostgresPersonsRepository",
    "InMemoryRecordsRepository",
    "PostgresRecordsRepository",
]
