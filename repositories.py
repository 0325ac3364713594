from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

import structlog
from pydantic import ValidationError

from errors import StorageError
from models import Account, FeedbackEntry
from storage import DocumentStore

logger = structlog.get_logger()


class AccountRepository(ABC):
    @abstractmethod
    async def get_account(self, email: str) -> Optional[Account]:
        """Get account by email. Returns None if account doesn't exist."""
        pass

    @abstractmethod
    async def add_account(self, email: str, account: Account) -> None:
        """Register a new account under ``email``."""
        pass

    @abstractmethod
    async def account_exists(self, email: str) -> bool:
        """Check if account exists."""
        pass

    @abstractmethod
    async def list_accounts(self) -> List[Tuple[str, Account]]:
        """All accounts in registration order."""
        pass

    @abstractmethod
    async def get_accounts_count(self) -> int:
        """Get total number of accounts."""
        pass

    @abstractmethod
    def mutation(self):
        """Async context wrapping one change; flushed on exit, undone on error."""
        pass


class FeedbackRepository(ABC):
    @abstractmethod
    async def append(self, entry: FeedbackEntry) -> None:
        pass

    @abstractmethod
    async def list_all(self) -> List[FeedbackEntry]:
        pass

    @abstractmethod
    async def get_feedbacks_count(self) -> int:
        pass

    @abstractmethod
    def mutation(self):
        pass


class DocumentRepository:
    """Holds a whole document in memory and mirrors it to a DocumentStore.

    ``load`` runs once at startup. Every change happens inside ``mutation``,
    which snapshots state, lets the caller modify it, and writes the full
    document back. If the caller or the write fails the snapshot is restored,
    so memory never runs ahead of what is durable.
    """

    name = "document"

    def __init__(self, store: DocumentStore):
        self.store = store

    def load(self) -> None:
        """Read the stored document into memory.

        A document that cannot be read or does not have the expected shape
        raises StorageError; the store is left untouched.
        """
        try:
            document = self.store.load()
            if document is not None:
                self._restore_document(document)
        except StorageError as e:
            logger.error("Failed to load document", repository=self.name, error=str(e))
            self._reset()
            raise
        except (ValidationError, TypeError, AttributeError) as e:
            logger.error("Stored document has an invalid shape", repository=self.name, error=str(e))
            self._reset()
            raise StorageError(f"Invalid {self.name} document: {e}") from e
        logger.info("Document loaded", repository=self.name, size=self._size())

    def flush(self) -> None:
        self.store.save(self._dump_document())

    @asynccontextmanager
    async def mutation(self) -> AsyncIterator[None]:
        snapshot = self._snapshot()
        try:
            yield
            self.flush()
        except StorageError as e:
            logger.error("Flush failed, rolling back", repository=self.name, error=str(e), exc_info=True)
            self._rollback(snapshot)
            raise
        except BaseException:
            self._rollback(snapshot)
            raise

    def _restore_document(self, document) -> None:
        raise NotImplementedError

    def _dump_document(self):
        raise NotImplementedError

    def _snapshot(self):
        raise NotImplementedError

    def _rollback(self, snapshot) -> None:
        raise NotImplementedError

    def _reset(self) -> None:
        raise NotImplementedError

    def _size(self) -> int:
        raise NotImplementedError


class DocumentAccountRepository(DocumentRepository, AccountRepository):
    name = "accounts"

    def __init__(self, store: DocumentStore):
        super().__init__(store)
        self.accounts: Dict[str, Account] = {}

    async def get_account(self, email: str) -> Optional[Account]:
        return self.accounts.get(email)

    async def add_account(self, email: str, account: Account) -> None:
        if email in self.accounts:
            raise ValueError(f"Account {email} already exists")
        self.accounts[email] = account

    async def account_exists(self, email: str) -> bool:
        return email in self.accounts

    async def list_accounts(self) -> List[Tuple[str, Account]]:
        return list(self.accounts.items())

    async def get_accounts_count(self) -> int:
        return len(self.accounts)

    def _restore_document(self, document) -> None:
        self.accounts = {
            email: Account.model_validate(record) for email, record in document.items()
        }

    def _dump_document(self):
        return {email: account.model_dump(mode="json") for email, account in self.accounts.items()}

    def _snapshot(self):
        return {email: account.model_copy(deep=True) for email, account in self.accounts.items()}

    def _rollback(self, snapshot) -> None:
        self.accounts = snapshot

    def _reset(self) -> None:
        self.accounts = {}

    def _size(self) -> int:
        return len(self.accounts)


class DocumentFeedbackRepository(DocumentRepository, FeedbackRepository):
    name = "feedbacks"

    def __init__(self, store: DocumentStore):
        super().__init__(store)
        self.entries: List[FeedbackEntry] = []

    async def append(self, entry: FeedbackEntry) -> None:
        self.entries.append(entry)

    async def list_all(self) -> List[FeedbackEntry]:
        return list(self.entries)

    async def get_feedbacks_count(self) -> int:
        return len(self.entries)

    def _restore_document(self, document) -> None:
        self.entries = [FeedbackEntry.model_validate(record) for record in document]

    def _dump_document(self):
        return [entry.model_dump(mode="json") for entry in self.entries]

    def _snapshot(self):
        # Entries are never mutated, only appended
        return len(self.entries)

    def _rollback(self, snapshot) -> None:
        del self.entries[snapshot:]

    def _reset(self) -> None:
        self.entries = []

    def _size(self) -> int:
        return len(self.entries)
