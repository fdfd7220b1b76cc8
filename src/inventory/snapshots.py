from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class StockSnapshot:
    id: int
    product_id: int
    product_name: str
    product_code: str
    branch_id: int
    branch_name: str
    quantity: int
    minimum_stock: int
    low_stock: bool

    @classmethod
    def from_stock(cls, stock):
        return cls(
            id=stock.pk,
            product_id=stock.product_id,
            product_name=stock.product.name,
            product_code=stock.product.code,
            branch_id=stock.branch_id,
            branch_name=stock.branch.name,
            quantity=stock.quantity,
            minimum_stock=stock.minimum_stock,
            low_stock=stock.is_low_stock,
        )

    def as_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class MovementRecord:
    reference_number: str
    type: str
    quantity: int
    notes: str
    created_by: str
    from_branch: str | None
    to_branch: str | None
    created_at: str

    @classmethod
    def from_movement(cls, movement):
        user = movement.created_by
        return cls(
            reference_number=movement.reference_number,
            type=movement.type,
            quantity=movement.quantity,
            notes=movement.notes,
            created_by=user.get_full_name() or user.get_username(),
            from_branch=movement.from_branch.name if movement.from_branch_id else None,
            to_branch=movement.to_branch.name if movement.to_branch_id else None,
            created_at=movement.created_at.isoformat(),
        )

    def as_dict(self):
        return asdict(self)


def page_payload(page, builder):
    return {
        "count": page.paginator.count,
        "page": page.number,
        "num_pages": page.paginator.num_pages,
        "start_index": page.start_index(),
        "end_index": page.end_index(),
        "results": [builder(item).as_dict() for item in page.object_list],
    }
