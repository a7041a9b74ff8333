from django.urls import path
from . import views

app_name = 'news'

urlpatterns = [
    path('api/facebook-news', views.facebook_news, name='facebook_news'),
]
