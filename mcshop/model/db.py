from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    JSON,
    ForeignKey,
    UniqueConstraint,
    Index,
)


Base = declarative_base()

# order lifecycle
ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_CANCELLED = "cancelled"
ORDER_REJECTED = "rejected"
ORDER_TERMINAL = (ORDER_PAID, ORDER_CANCELLED, ORDER_REJECTED)

# license lifecycle
LICENSE_ACTIVE = "active"
LICENSE_REVOKED = "revoked"
LICENSE_EXPIRED = "expired"

# minecraft order lifecycle
MC_PENDING = "pending"
MC_APPLIED = "applied"
MC_FAILED = "failed"
MC_RETRYING = "retrying"

# executed command lifecycle
CMD_PENDING = "pending"
CMD_SUCCESS = "success"
CMD_FAILED = "failed"

COMMAND_TYPES = ("luckperms", "console", "player")


# ----------------------------
# Catalog
# ----------------------------
class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # minor units
    # plugin | rank | item | money
    product_type = Column(String, nullable=False, default="plugin")
    jar_file_path = Column(String, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class PluginVersion(Base):
    __tablename__ = "plugin_versions"
    id = Column(String, primary_key=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    version = Column(String, nullable=False)
    jar_file_path = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class Rank(Base):
    __tablename__ = "ranks"
    id = Column(String, primary_key=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    name = Column(String, nullable=False)
    luckperms_group = Column(String, nullable=False)


class RankCommand(Base):
    __tablename__ = "rank_commands"
    id = Column(String, primary_key=True)
    rank_id = Column(String, ForeignKey("ranks.id"), nullable=False)
    # NULL applies to every server
    server_id = Column(
        String, ForeignKey("minecraft_servers.id"), nullable=True
    )
    command = Column(Text, nullable=False)
    command_type = Column(String, nullable=False, default="luckperms")
    execution_order = Column(Integer, nullable=False, default=0)


class GameItem(Base):
    __tablename__ = "game_items"
    id = Column(String, primary_key=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    item_id = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    commands = Column(JSON, nullable=True)  # list of templates


class GameMoney(Base):
    __tablename__ = "game_money"
    id = Column(String, primary_key=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    # vault | playerpoints | custom
    currency_type = Column(String, nullable=False, default="vault")
    command = Column(Text, nullable=True)


# ----------------------------
# Orders
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    total = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="CLP")
    customer_email = Column(String, nullable=True)

    # pending | paid | cancelled | rejected
    status = Column(String, nullable=False, default=ORDER_PENDING)
    commerce_order = Column(String, nullable=False, unique=True)
    payment_token = Column(String, nullable=True, unique=True)
    payment_reference_number = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Integer, nullable=False)  # unit price at purchase time
    created_at = Column(Float, nullable=False)


class License(Base):
    __tablename__ = "licenses"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    order_item_id = Column(
        String, ForeignKey("order_items.id"), nullable=False
    )
    license_key = Column(String, nullable=False, unique=True)
    # active | revoked | expired
    status = Column(String, nullable=False, default=LICENSE_ACTIVE)
    expires_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    # one license per purchased line; concurrent webhooks race on this
    __table_args__ = (
        UniqueConstraint("order_id", "order_item_id",
                         name="uq_license_order_item"),
    )


class UserProduct(Base):
    __tablename__ = "user_products"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    license_id = Column(
        String, ForeignKey("licenses.id"), nullable=False, unique=True
    )
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_user_products_user_product", "user_id", "product_id"),
    )


class ProductDownload(Base):
    __tablename__ = "product_downloads"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True)
    license_id = Column(String, ForeignKey("licenses.id"), nullable=True)
    download_token = Column(String, nullable=False, unique=True)
    expires_at = Column(Float, nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


# ----------------------------
# Game servers
# ----------------------------
class MinecraftServer(Base):
    __tablename__ = "minecraft_servers"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    host = Column(String, nullable=False)
    port = Column(Integer, nullable=False, default=25565)
    api_key = Column(String, nullable=False, unique=True)
    api_secret = Column(String, nullable=False)
    webhook_url = Column(String, nullable=True)
    rcon_host = Column(String, nullable=True)
    rcon_port = Column(Integer, nullable=True, default=25575)
    rcon_password = Column(String, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class MinecraftOrder(Base):
    __tablename__ = "minecraft_orders"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    server_id = Column(
        String, ForeignKey("minecraft_servers.id"), nullable=True
    )
    minecraft_username = Column(String, nullable=False)
    minecraft_uuid = Column(String, nullable=False)
    # pending | applied | failed | retrying
    status = Column(String, nullable=False, default=MC_PENDING)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    applied_at = Column(Float, nullable=True)
    # held by a push or a plugin poll until then; expires if the holder dies
    claimed_until = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class ExecutedCommand(Base):
    __tablename__ = "executed_commands"
    id = Column(String, primary_key=True)
    minecraft_order_id = Column(
        String, ForeignKey("minecraft_orders.id"), nullable=True, index=True
    )
    server_id = Column(
        String, ForeignKey("minecraft_servers.id"), nullable=False
    )
    # "<order_item_id>:<position>", used to skip already-applied commands
    command_key = Column(String, nullable=True)
    command = Column(Text, nullable=False)
    command_type = Column(String, nullable=False, default="console")
    # pending | success | failed
    status = Column(String, nullable=False, default=CMD_PENDING)
    response = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    executed_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


# ----------------------------
# Audit
# ----------------------------
class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True)
    action = Column(String, nullable=False)
    resource_type = Column(String, nullable=False)
    resource_id = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
