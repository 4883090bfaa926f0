from __future__ import annotations

from decimal import Decimal
from typing import Annotated

from pydantic import Field

# --- Numeric primitives ---
Money = Annotated[Decimal, Field(ge=0, max_digits=20, decimal_places=2)]
Fsi = Annotated[Decimal, Field(ge=0, max_digits=10, decimal_places=4)]
Score = Annotated[int, Field(ge=0, le=100)]
ApprovalPercentage = Annotated[int, Field(ge=50, le=100)]
Progress = Annotated[int, Field(ge=0, le=100)]
