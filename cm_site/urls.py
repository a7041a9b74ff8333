from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('cm-admin/', admin.site.urls),
    path('', include('payments.urls', namespace='payments')),
    path('', include('news.urls', namespace='news')),
]
