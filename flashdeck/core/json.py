"""JSON response rendering."""

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fastapi.responses import JSONResponse


class FlashdeckJSONEncoder(json.JSONEncoder):
  """Encode Decimal and datetime values produced by the jobs store."""

  def default(self, obj: Any) -> Any:
    if isinstance(obj, Decimal):
      return int(obj) if obj % 1 == 0 else float(obj)
    if isinstance(obj, datetime | date):
      return obj.isoformat()
    return super().default(obj)


class FlashdeckJSONResponse(JSONResponse):
  """Compact JSON response using FlashdeckJSONEncoder."""

  def render(self, content: Any) -> bytes:
    return json.dumps(content, ensure_ascii=False, allow_nan=False, indent=None, separators=(",", ":"), cls=FlashdeckJSONEncoder).encode("utf-8")
