# certsync/models/registry.py

from sqlalchemy import Index

from .base import BaseModel, db


class Organization(BaseModel):
    """Certificate holder (client) identified by its CUIT."""

    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    cuit = db.Column(db.String(20), unique=True, nullable=False, index=True)
    razon_social = db.Column(db.String(255), nullable=True, index=True)
    direccion = db.Column(db.String(500), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    telefono = db.Column(db.String(50), nullable=True)
    contacto = db.Column(db.String(200), nullable=True)

    # Optimistic concurrency counter, bumped on every write
    version = db.Column(db.Integer, nullable=False, default=1)

    def __repr__(self):
        return f"<Organization {self.cuit}>"


class Product(BaseModel):
    """Certified product identified by its codification."""

    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    codificacion = db.Column(db.String(100), unique=True, nullable=False, index=True)
    titular_responsable = db.Column(db.String(255), nullable=True)
    tipo_certificacion = db.Column(db.String(100), nullable=True)
    fecha_vencimiento = db.Column(db.Date, nullable=True)
    # Natural-key link; rows may outlive the organization they reference
    organization_cuit = db.Column(db.String(20), nullable=True, index=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    __table_args__ = (Index("idx_products_org_vencimiento", "organization_cuit", "fecha_vencimiento"),)

    def __repr__(self):
        return f"<Product {self.codificacion}>"
