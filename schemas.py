"""
Database Schemas for the Vunalet marketplace (MongoDB collections)

Each Pydantic model describes the documents of one collection:
- UserProfile -> "userProfiles"
- Product -> "products"
- Category -> "categories"
- Order -> "orders"
- Delivery -> "deliveries"
- Rating -> "ratings"
- Notification -> "notifications"
- Balance -> "balances"
"""

from pydantic import BaseModel, Field
from typing import Optional, Literal, List, Any, Dict
from datetime import datetime

Role = Literal["farmer", "dispatcher", "buyer"]
PaymentMethod = Literal["lisk_zar", "cash"]
PaymentStatus = Literal["pending", "paid", "failed"]
OrderStatus = Literal["pending", "confirmed", "preparing", "ready", "in_transit", "delivered", "cancelled"]
DeliveryStatus = Literal["assigned", "picked_up", "in_transit", "delivered"]
AssignmentStatus = Literal["available", "claimed", "auto_assigned"]
AssignmentMethod = Literal["checkout", "manual", "auto", "random"]
NotificationType = Literal["order_update", "payment", "delivery", "system"]


class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class UserProfile(BaseModel):
    clerkUserId: str
    email: str
    role: Optional[Role] = None
    firstName: str
    lastName: str
    phone: Optional[str] = None
    address: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    businessName: Optional[str] = None
    isVerified: bool = False
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class Product(BaseModel):
    farmerId: str
    categoryId: str
    name: str
    price: float = Field(..., ge=0)
    unit: str
    quantity: float = Field(..., ge=0)
    description: Optional[str] = None
    location: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    status: Literal["active", "inactive", "out_of_stock"] = "active"
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class Category(BaseModel):
    categoryId: str
    name: str
    slug: str
    description: Optional[str] = None
    productCount: int = 0
    isActive: bool = True


class OrderItem(BaseModel):
    productId: str
    name: str
    price: float = Field(..., ge=0)
    quantity: float = Field(..., gt=0)
    unit: str


class Order(BaseModel):
    buyerId: str
    farmerId: str
    dispatcherId: Optional[str] = None
    products: List[OrderItem]
    subtotal: float
    deliveryDistance: float = 0
    deliveryCost: float = 0
    totalAmount: float
    platformFee: float
    farmerAmount: float
    dispatcherAmount: float
    deliveryAddress: str
    deliveryCoordinates: Optional[Coordinates] = None
    pickupLocation: Optional[str] = None
    pickupCoordinates: Optional[Coordinates] = None
    paymentMethod: PaymentMethod
    paymentStatus: PaymentStatus = "pending"
    orderStatus: OrderStatus = "pending"
    assignmentStatus: AssignmentStatus = "available"
    assignmentMethod: Optional[AssignmentMethod] = None
    assignmentExpiryTime: Optional[datetime] = None
    specialInstructions: Optional[str] = None
    estimatedPickupTime: Optional[str] = None
    estimatedDeliveryTime: Optional[str] = None
    actualDeliveryTime: Optional[str] = None
    cancellationReason: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    history: Optional[List[dict]] = []


class Delivery(BaseModel):
    orderId: str
    dispatcherId: str
    pickupLocation: str
    deliveryLocation: str
    pickupCoordinates: Optional[Coordinates] = None
    deliveryCoordinates: Optional[Coordinates] = None
    status: DeliveryStatus = "assigned"
    estimatedPickupTime: Optional[str] = None
    actualPickupTime: Optional[str] = None
    estimatedDeliveryTime: Optional[str] = None
    actualDeliveryTime: Optional[str] = None
    notes: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class Rating(BaseModel):
    orderId: str
    raterId: str
    ratedUserId: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class Notification(BaseModel):
    userId: str
    type: NotificationType
    title: str
    message: str
    tag: Optional[str] = None
    url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    isRead: bool = False
    createdAt: Optional[datetime] = None


class Balance(BaseModel):
    clerkUserId: str
    token: str = "L ZAR Coin"
    walletBalance: float = 0
    ledgerBalance: float = 0
    updatedAt: Optional[datetime] = None
