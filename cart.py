"""Shopping cart passed explicitly into checkout."""
from typing import Dict, Iterable, List, Mapping

from errors import ValidationError
from schemas import CartLine


class Cart:
    """Mapping of book id to quantity, in insertion order.

    The cart lives with the client; the server only rebuilds one from the lines
    submitted at checkout. Adding a book that is already present increases its
    quantity, so each book appears on at most one line.
    """

    def __init__(self, lines: Iterable[CartLine] = ()):
        self._quantities: Dict[str, int] = {}
        for line in lines:
            self.add(line.book_id, line.quantity)

    def add(self, book_id: str, quantity: int = 1) -> None:
        if quantity < 1:
            raise ValidationError(f"Quantity must be at least 1 for book {book_id}")
        self._quantities[book_id] = self._quantities.get(book_id, 0) + quantity

    def update_quantity(self, book_id: str, quantity: int) -> None:
        if quantity <= 0:
            self.remove(book_id)
            return
        self._quantities[book_id] = quantity

    def remove(self, book_id: str) -> None:
        self._quantities.pop(book_id, None)

    def clear(self) -> None:
        self._quantities.clear()

    def lines(self) -> List[CartLine]:
        return [CartLine(book_id=b, quantity=q) for b, q in self._quantities.items()]

    def total_items(self) -> int:
        return sum(self._quantities.values())

    def total_price(self, prices: Mapping[str, int]) -> int:
        return sum(prices[b] * q for b, q in self._quantities.items())

    def __len__(self) -> int:
        return len(self._quantities)

    def __contains__(self, book_id: str) -> bool:
        return book_id in self._quantities
