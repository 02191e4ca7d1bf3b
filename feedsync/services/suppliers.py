# feedsync/services/suppliers.py
from typing import Optional

from ..errors import NotFoundError
from ..models import Product, Supplier, utcnow
from ..utils.logger import info


class SupplierService:
    """Supplier rows, discovered from the manifest and activated by an operator."""

    def __init__(self, store, manifest=None):
        self.store = store
        self.manifest = manifest

    def get(self, supplier_id: int) -> Optional[Supplier]:
        return self.store.get(Supplier, supplier_id)

    def get_by_code(self, code: str) -> Optional[Supplier]:
        return self.store.find(Supplier, code=code)

    def require(self, code: str) -> Supplier:
        supplier = self.get_by_code(code)
        if supplier is None:
            raise NotFoundError(f"supplier {code} not found")
        return supplier

    def list(self, active: bool | None = None) -> list[Supplier]:
        filters = {} if active is None else {"is_active": active}
        return self.store.find_many(Supplier, order_by=Supplier.code, **filters)

    def discover(self, names: dict[str, str] | None = None) -> dict:
        """Create an inactive row for every manifest supplier code not yet known."""
        names = names or {}
        codes = self.manifest.supplier_codes()
        known = {s.code for s in self.store.find_many_by_keys(Supplier, "code", codes)}
        created = []
        for code in codes:
            if code in known:
                continue
            self.store.create(Supplier, {"code": code, "name": names.get(code), "is_active": False})
            created.append(code)
        info(f"[suppliers] discovered {len(codes)} codes, {len(created)} new")
        return {"codes": codes, "created": created}

    def activate(self, code: str, active: bool = True) -> Supplier:
        supplier = self.require(code)
        if supplier.is_active != active:
            supplier = self.store.update(Supplier, supplier.id, {"is_active": active})
            info(f"[suppliers] {code} {'activated' if active else 'deactivated'}")
        return supplier

    def record_sync(self, supplier_id: int, status: str, message: str | None = None,
                    manifest_hash: str | None = None):
        data = {
            "last_sync_date": utcnow(),
            "last_sync_status": status,
            "last_sync_message": message,
            "products_count": self.store.count(Product, supplier_id=supplier_id),
        }
        if manifest_hash:
            data["last_hash"] = manifest_hash
        self.store.update(Supplier, supplier_id, data)
