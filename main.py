import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from accounts import AccountService
from addresses import AddressBook
from cache import Cache, ReadThrough, connect_cache
from catalog import Catalog
from database import EntityStore, connect_store
from errors import install_error_handlers
from images import PUBLIC_PREFIX, LocalImageStore
from line_items import CartService, WishlistService
from mailer import Mailer
from orders import OrderService
from schemas import (AddItemDTO, AddressDTO, AddressUpdateDTO, Category, CheckoutDTO, LoginDTO, OrderStatusDTO,
                     ProductDTO, ProductUpdateDTO, ProfileDTO, RegisterDTO, ResendVerificationDTO, UpdateItemDTO,
                     VerifyEmailDTO, WishlistAddDTO)
from security import TOKEN_COOKIE, Principal, get_principal, require_admin
from settings import Settings, load_settings

# Logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("flamecrumble")


@dataclass
class Services:
    settings: Settings
    store: EntityStore
    cache: Cache
    notifier: Any
    images: LocalImageStore
    catalog: Catalog
    carts: CartService
    wishlists: WishlistService
    addresses: AddressBook
    orders: OrderService
    accounts: AccountService

    def close(self) -> None:
        self.cache.close()
        self.store.close()


def build_services(settings: Settings, store: Optional[EntityStore] = None, cache: Optional[Cache] = None,
                   notifier: Any = None) -> Services:
    store = store or connect_store(settings)
    cache = cache or connect_cache(settings)
    reader = ReadThrough(cache)
    catalog = Catalog(store, reader, settings)
    carts = CartService(store, reader, catalog, settings.cart_ttl)
    wishlists = WishlistService(store, reader, catalog, settings.wishlist_ttl)
    catalog.collections = [carts, wishlists]
    addresses = AddressBook(store)
    return Services(
        settings=settings,
        store=store,
        cache=cache,
        notifier=notifier or Mailer(settings),
        images=LocalImageStore(settings),
        catalog=catalog,
        carts=carts,
        wishlists=wishlists,
        addresses=addresses,
        orders=OrderService(store, reader, carts, catalog, addresses, settings),
        accounts=AccountService(store, settings),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(settings: Optional[Settings] = None, store: Optional[EntityStore] = None,
               cache: Optional[Cache] = None, notifier: Any = None, seed: bool = True) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = build_services(settings, store=store, cache=cache, notifier=notifier)
        services.store.ensure_indexes()
        if seed:
            created = services.catalog.seed()
            if created:
                logger.info("Seeded %d sample products", created)
        app.state.services = services
        logger.info("%s API started", settings.store_name)
        try:
            yield
        finally:
            services.close()
            logger.info("%s API stopped", settings.store_name)

    app = FastAPI(title="flame&crumble API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)
    os.makedirs(settings.upload_dir, exist_ok=True)
    app.mount(PUBLIC_PREFIX, StaticFiles(directory=settings.upload_dir), name="images")
    register_routes(app, settings)
    return app


def _set_token_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(TOKEN_COOKIE, token, httponly=True, secure=settings.cookie_secure,
                        samesite="lax", max_age=settings.jwt_exp_min * 60)


def register_routes(app: FastAPI, settings: Settings) -> None:
    # Health
    @app.get("/")
    def root():
        return {"name": settings.store_name, "status": "ok"}

    # Auth
    @app.post("/auth/register", status_code=201)
    def register(data: RegisterDTO, response: Response, background: BackgroundTasks,
                 services: Services = Depends(get_services)):
        def dispatch(email: str, code: str) -> None:
            background.add_task(services.notifier.send_verification_code, email, code)

        user, token = services.accounts.register(data, dispatch)
        _set_token_cookie(response, token, settings)
        return {"message": "Registered. Check your email for a verification code.", "token": token, "user": user}

    @app.post("/auth/login")
    def login(data: LoginDTO, response: Response, services: Services = Depends(get_services)):
        user, token = services.accounts.login(data.email, data.password)
        _set_token_cookie(response, token, settings)
        return {"token": token, "user": user}

    @app.post("/auth/logout")
    def logout(response: Response):
        response.delete_cookie(TOKEN_COOKIE)
        return {"message": "Logged out"}

    @app.post("/auth/verify-email")
    def verify_email(data: VerifyEmailDTO, services: Services = Depends(get_services)):
        user = services.accounts.verify_email(data.email, data.code)
        return {"message": "Email verified", "user": user}

    @app.post("/auth/resend-verification")
    def resend_verification(data: ResendVerificationDTO, background: BackgroundTasks,
                            services: Services = Depends(get_services)):
        def dispatch(email: str, code: str) -> None:
            background.add_task(services.notifier.send_verification_code, email, code)

        services.accounts.resend_verification(data.email, dispatch)
        return {"message": "Verification code sent"}

    @app.get("/auth/status")
    def auth_status(principal: Principal = Depends(get_principal), services: Services = Depends(get_services)):
        user = services.accounts.profile(principal)
        return {"authenticated": True, "isVerified": bool(user.get("is_verified")), "user": user}

    @app.get("/auth/me")
    def me(principal: Principal = Depends(get_principal), services: Services = Depends(get_services)):
        return services.accounts.profile(principal)

    @app.put("/auth/me")
    def update_me(data: ProfileDTO, principal: Principal = Depends(get_principal),
                  services: Services = Depends(get_services)):
        return services.accounts.update_profile(principal, data)

    # Products
    @app.get("/products")
    def list_products(category: Optional[Category] = None, featured: Optional[bool] = None,
                      services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
        return services.catalog.list(category=category, featured=featured)

    @app.get("/products/{product_id}")
    def get_product(product_id: str, services: Services = Depends(get_services)):
        return services.catalog.get(product_id)

    # Cart
    @app.get("/cart")
    def get_cart(principal: Principal = Depends(get_principal), services: Services = Depends(get_services)):
        return services.carts.read(principal.user_id)

    @app.post("/cart", status_code=201)
    def add_to_cart(data: AddItemDTO, principal: Principal = Depends(get_principal),
                    services: Services = Depends(get_services)):
        return services.carts.add_item(principal.user_id, data.product_id, data.quantity)

    @app.patch("/cart/{item_id}")
    def update_cart_item(item_id: str, data: UpdateItemDTO, principal: Principal = Depends(get_principal),
                         services: Services = Depends(get_services)):
        return services.carts.update_item(principal.user_id, item_id, data.quantity)

    @app.delete("/cart/{item_id}")
    def remove_from_cart(item_id: str, principal: Principal = Depends(get_principal),
                         services: Services = Depends(get_services)):
        cart = services.carts.remove_item(principal.user_id, item_id)
        return {"message": "Item removed from cart", "cart": cart}

    # Wishlist
    @app.get("/wishlist")
    def get_wishlist(principal: Principal = Depends(get_principal), services: Services = Depends(get_services)):
        return services.wishlists.read(principal.user_id)

    @app.post("/wishlist", status_code=201)
    def add_to_wishlist(data: WishlistAddDTO, principal: Principal = Depends(get_principal),
                        services: Services = Depends(get_services)):
        return services.wishlists.add_item(principal.user_id, data.product_id)

    @app.delete("/wishlist/{item_id}")
    def remove_from_wishlist(item_id: str, principal: Principal = Depends(get_principal),
                             services: Services = Depends(get_services)):
        wishlist = services.wishlists.remove_item(principal.user_id, item_id)
        return {"message": "Product removed from wishlist", "wishlist": wishlist}

    # Orders
    @app.post("/orders", status_code=201)
    def create_order(data: CheckoutDTO, principal: Principal = Depends(get_principal),
                     services: Services = Depends(get_services)):
        return services.orders.create_order(principal, data)

    @app.get("/orders")
    def order_history(principal: Principal = Depends(get_principal), services: Services = Depends(get_services)):
        return services.orders.history(principal)

    @app.get("/orders/{order_id}")
    def order_details(order_id: str, principal: Principal = Depends(get_principal),
                      services: Services = Depends(get_services)):
        return services.orders.detail(principal, order_id)

    # Addresses
    @app.get("/addresses")
    def list_addresses(principal: Principal = Depends(get_principal), services: Services = Depends(get_services)):
        return {"addresses": services.addresses.list(principal.user_id)}

    @app.post("/addresses", status_code=201)
    def create_address(data: AddressDTO, principal: Principal = Depends(get_principal),
                       services: Services = Depends(get_services)):
        address = services.addresses.create(principal.user_id, data)
        return {"message": "Address added successfully", "address": address}

    @app.put("/addresses/{address_id}")
    def update_address(address_id: str, data: AddressUpdateDTO, principal: Principal = Depends(get_principal),
                       services: Services = Depends(get_services)):
        address = services.addresses.update(address_id, principal.user_id, data)
        return {"message": "Address updated successfully", "address": address}

    @app.delete("/addresses/{address_id}")
    def delete_address(address_id: str, principal: Principal = Depends(get_principal),
                       services: Services = Depends(get_services)):
        services.addresses.delete(address_id, principal.user_id)
        return {"message": "Address deleted successfully"}

    @app.patch("/addresses/{address_id}/set-default")
    def set_default_address(address_id: str, principal: Principal = Depends(get_principal),
                            services: Services = Depends(get_services)):
        address = services.addresses.set_default(address_id, principal.user_id)
        return {"message": "Address set as default", "address": address}

    # Admin
    @app.get("/admin/dashboard")
    def dashboard(admin: Principal = Depends(require_admin), services: Services = Depends(get_services)):
        return {
            "totalOrders": services.orders.count(),
            "totalProducts": services.store.count_documents("product"),
            "totalUsers": services.accounts.count(),
            "recentOrders": services.orders.recent(5),
        }

    @app.post("/admin/products", status_code=201)
    def create_product(data: ProductDTO, admin: Principal = Depends(require_admin),
                       services: Services = Depends(get_services)):
        return services.catalog.create(data)

    @app.patch("/admin/products/{product_id}")
    def update_product(product_id: str, data: ProductUpdateDTO, admin: Principal = Depends(require_admin),
                       services: Services = Depends(get_services)):
        return services.catalog.update(product_id, data)

    @app.delete("/admin/products/{product_id}")
    def delete_product(product_id: str, admin: Principal = Depends(require_admin),
                       services: Services = Depends(get_services)):
        services.catalog.delete(product_id)
        return {"message": "Product deleted successfully"}

    @app.patch("/admin/orders/{order_id}")
    def update_order_status(order_id: str, data: OrderStatusDTO, admin: Principal = Depends(require_admin),
                            services: Services = Depends(get_services)):
        return services.orders.update_status(order_id, data.status)

    @app.post("/admin/uploads", status_code=201)
    def upload_image(file: UploadFile = File(...), admin: Principal = Depends(require_admin),
                     services: Services = Depends(get_services)):
        url = services.images.save(file.filename, file.content_type, file.file.read())
        return {"url": url}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
