from typing import Annotated, Union

from pydantic import Field

from schemas.borrowings import BorrowRequest
from schemas.materials import ConsumeRequest

TransactionRequest = Annotated[Union[BorrowRequest, ConsumeRequest], Field(discriminator="type")]
