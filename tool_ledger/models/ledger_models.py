from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class Category(Base):
    __tablename__ = "Categories"

    CategoryID = Column(Integer, primary_key=True)
    CategoryName = Column(String(100), nullable=False, unique=True)
    CategoryType = Column(String(20), nullable=False)
    Description = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())

    Tools = relationship("Tool", back_populates="Category")
    Materials = relationship("Material", back_populates="Category")


class Tool(Base):
    __tablename__ = "Tools"

    ToolID = Column(Integer, primary_key=True)
    ToolNumber = Column(String(50))
    ToolName = Column(String(200), nullable=False)
    CategoryID = Column(Integer, ForeignKey("Categories.CategoryID"), nullable=False)
    TotalQuantity = Column(Integer, nullable=False, default=0)
    AvailableQuantity = Column(Integer, nullable=False, default=0)
    Location = Column(String(255))
    Supplier = Column(String(255))
    PurchaseDate = Column(DateTime)
    PurchasePrice = Column(Numeric(10, 2))
    Notes = Column(Text)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Category = relationship("Category", back_populates="Tools")
    Units = relationship(
        "ToolUnit",
        back_populates="Tool",
        cascade="all, delete-orphan",
        order_by="ToolUnit.UnitNumber",
    )
    BorrowingItems = relationship("BorrowingItem", back_populates="Tool")


class ToolUnit(Base):
    __tablename__ = "ToolUnits"
    __table_args__ = (UniqueConstraint("ToolID", "UnitNumber", name="uq_toolunits_tool_unitnumber"),)

    ToolUnitID = Column(Integer, primary_key=True)
    ToolID = Column(Integer, ForeignKey("Tools.ToolID", ondelete="CASCADE"), nullable=False, index=True)
    UnitNumber = Column(Integer, nullable=False)
    Condition = Column(String(20), nullable=False, default="GOOD")
    IsAvailable = Column(Boolean, nullable=False, default=True)
    IsRetired = Column(Boolean, nullable=False, default=False)
    Notes = Column(Text)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Tool = relationship("Tool", back_populates="Units")
    BorrowedUnits = relationship("BorrowedUnit", back_populates="ToolUnit")


class Material(Base):
    __tablename__ = "Materials"

    MaterialID = Column(Integer, primary_key=True)
    MaterialNumber = Column(String(50))
    MaterialName = Column(String(200), nullable=False)
    CategoryID = Column(Integer, ForeignKey("Categories.CategoryID"), nullable=False)
    CurrentQuantity = Column(Numeric(10, 3), nullable=False, default=0)
    ThresholdQuantity = Column(Numeric(10, 3), nullable=False, default=0)
    Unit = Column(String(20), nullable=False)
    Location = Column(String(255))
    Supplier = Column(String(255))
    UnitPrice = Column(Numeric(10, 2))
    Notes = Column(Text)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Category = relationship("Category", back_populates="Materials")
    ConsumptionItems = relationship("ConsumptionItem", back_populates="Material")


class BorrowingTransaction(Base):
    __tablename__ = "BorrowingTransactions"

    BorrowingID = Column(Integer, primary_key=True)
    BorrowingNumber = Column(String(50), nullable=False)
    BorrowerName = Column(String(100), nullable=False)
    BorrowDate = Column(DateTime, nullable=False)
    DueDate = Column(DateTime, nullable=False, index=True)
    ReturnDate = Column(DateTime)
    Status = Column(String(20), nullable=False, default="ACTIVE", index=True)
    Purpose = Column(String(500), nullable=False)
    Notes = Column(Text)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    BorrowingItems = relationship(
        "BorrowingItem",
        back_populates="BorrowingTransaction",
        cascade="all, delete-orphan",
        order_by="BorrowingItem.BorrowingItemID",
    )


class BorrowingItem(Base):
    __tablename__ = "BorrowingItems"

    BorrowingItemID = Column(Integer, primary_key=True)
    BorrowingID = Column(
        Integer, ForeignKey("BorrowingTransactions.BorrowingID", ondelete="CASCADE"), nullable=False, index=True
    )
    ToolID = Column(Integer, ForeignKey("Tools.ToolID"), nullable=False, index=True)
    Quantity = Column(Integer, nullable=False)
    OriginalCondition = Column(String(20), nullable=False)
    ReturnCondition = Column(String(20))
    ReturnDate = Column(DateTime)
    Notes = Column(Text)

    BorrowingTransaction = relationship("BorrowingTransaction", back_populates="BorrowingItems")
    Tool = relationship("Tool", back_populates="BorrowingItems")
    BorrowedUnits = relationship(
        "BorrowedUnit",
        back_populates="BorrowingItem",
        cascade="all, delete-orphan",
        order_by="BorrowedUnit.BorrowedUnitID",
    )


class BorrowedUnit(Base):
    __tablename__ = "BorrowedUnits"

    BorrowedUnitID = Column(Integer, primary_key=True)
    BorrowingItemID = Column(
        Integer, ForeignKey("BorrowingItems.BorrowingItemID", ondelete="CASCADE"), nullable=False, index=True
    )
    ToolUnitID = Column(Integer, ForeignKey("ToolUnits.ToolUnitID"), nullable=False, index=True)
    OriginalCondition = Column(String(20), nullable=False)
    ReturnCondition = Column(String(20))
    Notes = Column(Text)

    BorrowingItem = relationship("BorrowingItem", back_populates="BorrowedUnits")
    ToolUnit = relationship("ToolUnit", back_populates="BorrowedUnits")


class ConsumptionTransaction(Base):
    __tablename__ = "ConsumptionTransactions"

    ConsumptionID = Column(Integer, primary_key=True)
    ConsumptionNumber = Column(String(50), nullable=False)
    ConsumerName = Column(String(100), nullable=False)
    ConsumptionDate = Column(DateTime, nullable=False, index=True)
    Purpose = Column(String(500), nullable=False)
    ProjectName = Column(String(200))
    TotalValue = Column(Numeric(12, 2))
    Notes = Column(Text)
    CreatedDate = Column(DateTime, server_default=func.now())

    ConsumptionItems = relationship(
        "ConsumptionItem",
        back_populates="ConsumptionTransaction",
        cascade="all, delete-orphan",
        order_by="ConsumptionItem.ConsumptionItemID",
    )


class ConsumptionItem(Base):
    __tablename__ = "ConsumptionItems"

    ConsumptionItemID = Column(Integer, primary_key=True)
    ConsumptionID = Column(
        Integer, ForeignKey("ConsumptionTransactions.ConsumptionID", ondelete="CASCADE"), nullable=False, index=True
    )
    MaterialID = Column(Integer, ForeignKey("Materials.MaterialID"), nullable=False, index=True)
    Quantity = Column(Numeric(10, 3), nullable=False)
    UnitPrice = Column(Numeric(10, 2))
    TotalValue = Column(Numeric(12, 2))
    Notes = Column(Text)

    ConsumptionTransaction = relationship("ConsumptionTransaction", back_populates="ConsumptionItems")
    Material = relationship("Material", back_populates="ConsumptionItems")


class ActivityLog(Base):
    __tablename__ = "ActivityLogs"

    ActivityID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(20), nullable=False)
    ActorName = Column(String(100))
    OldValues = Column(Text)
    NewValues = Column(Text)
    Metadata = Column(Text)
    CreatedAt = Column(DateTime, server_default=func.now())
