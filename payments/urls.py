from django.urls import path
from . import views

app_name = 'payments'

urlpatterns = [
    path('api/p24/create', views.create, name='create'),
    # urlStatus déclaré chez P24
    path('api/p24/status', views.webhook, name='webhook'),
    path('api/p24/check', views.check, name='check'),
]
