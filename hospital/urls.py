from django.conf import settings
from django.conf.urls.static import static
from django.urls import include, path

from clinic import views

urlpatterns = [
    path('health/', views.health, name='health'),
    path('api/', include('clinic.urls')),
]

if settings.DEBUG:
    urlpatterns += static(settings.MEDIA_URL, document_root=settings.MEDIA_ROOT)
