from django.contrib.auth.models import AbstractUser
from django.core.validators import MaxValueValidator, MinValueValidator, RegexValidator
from django.db import models
from django.utils import timezone


class Role(models.TextChoices):
    ADMIN = 'admin', 'Admin'
    RECEPTION = 'reception', 'Reception'
    CHECKER_DOCTOR = 'checkerDoctor', 'Checker Doctor'
    LAB_TECH = 'labTech', 'Lab Tech'
    MAIN_DOCTOR = 'mainDoctor', 'Main Doctor'
    PHARMACY = 'pharmacy', 'Pharmacy'


class VisitStatus(models.TextChoices):
    REGISTERED = 'registered', 'Registered'
    CHECKED = 'checked', 'Checked'
    LAB_PENDING = 'lab_pending', 'Lab Pending'
    LAB_DONE = 'lab_done', 'Lab Done'
    DIAGNOSED = 'diagnosed', 'Diagnosed'
    DONE = 'done', 'Done'


class PharmacyStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    PARTIALLY_DISPENSED = 'partially_dispensed', 'Partially Dispensed'
    DISPENSED = 'dispensed', 'Dispensed'


phone_validator = RegexValidator(r'^\+?[\d\s\-()]+$', 'Please enter a valid phone number')
zip_code_validator = RegexValidator(r'^\d{5}(-\d{4})?$', 'Please enter a valid ZIP code')


class User(AbstractUser):
    """员工账号：每个账号只有一个角色"""
    role = models.CharField(max_length=20, choices=Role.choices)
    full_name = models.CharField(max_length=100, blank=True)

    def __str__(self):
        return f"{self.full_name or self.username} ({self.role})"


class Patient(models.Model):
    """病人表：被 Visit 引用后不能删除（on_delete=PROTECT）"""

    class Gender(models.TextChoices):
        MALE = 'male', 'Male'
        FEMALE = 'female', 'Female'
        OTHER = 'other', 'Other'

    first_name = models.CharField(max_length=50)
    last_name = models.CharField(max_length=50)
    gender = models.CharField(max_length=10, choices=Gender.choices)
    age = models.PositiveSmallIntegerField(validators=[MinValueValidator(0), MaxValueValidator(150)])
    phone = models.CharField(max_length=30, validators=[phone_validator])
    email = models.EmailField(blank=True)
    street = models.CharField(max_length=100, blank=True)
    city = models.CharField(max_length=50, blank=True)
    state = models.CharField(max_length=50, blank=True)
    zip_code = models.CharField(max_length=10, blank=True, validators=[zip_code_validator])
    country = models.CharField(max_length=50, default='USA')
    registered_by = models.ForeignKey(User, on_delete=models.PROTECT, related_name='registered_patients')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"

    def __str__(self):
        return self.full_name


class Visit(models.Model):
    """就诊：整个流程的聚合根，status 只能沿 lifecycle.TRANSITIONS 前进"""
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name='visits')
    visit_date = models.DateTimeField(default=timezone.now)
    complaint = models.CharField(max_length=1000)
    symptoms = models.CharField(max_length=1000, blank=True)
    diagnosis = models.CharField(max_length=1000, blank=True)
    checker_doctor = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='checked_visits'
    )
    main_doctor = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='diagnosed_visits'
    )
    status = models.CharField(
        max_length=20, choices=VisitStatus.choices, default=VisitStatus.REGISTERED, db_index=True
    )
    total_cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    paid = models.BooleanField(default=False)
    notes = models.TextField(max_length=2000, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-visit_date']

    @property
    def visit_number(self):
        return f"VISIT-{self.pk:06d}"

    def __str__(self):
        return f"{self.visit_number} ({self.status}) for {self.patient}"


class LabTest(models.Model):
    """化验单：performed_by / completed_at 只在 is_completed 变为 True 时写入一次"""

    class TestType(models.TextChoices):
        BLOOD = 'blood', 'Blood'
        URINE = 'urine', 'Urine'
        XRAY = 'xray', 'X-Ray'
        CT = 'ct', 'CT'
        MRI = 'mri', 'MRI'
        ULTRASOUND = 'ultrasound', 'Ultrasound'
        OTHER = 'other', 'Other'

    visit = models.ForeignKey(Visit, on_delete=models.CASCADE, related_name='lab_tests')
    test_name = models.CharField(max_length=100)
    test_type = models.CharField(max_length=20, choices=TestType.choices)
    result = models.TextField(max_length=2000, blank=True)
    file_url = models.CharField(max_length=500, blank=True)
    performed_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='performed_lab_tests'
    )
    is_completed = models.BooleanField(default=False)
    completed_at = models.DateTimeField(null=True, blank=True)
    notes = models.CharField(max_length=500, blank=True)
    cost = models.DecimalField(max_digits=10, decimal_places=2, default=0, validators=[MinValueValidator(0)])
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']

    @property
    def test_number(self):
        return f"LAB-{self.pk:06d}"

    def __str__(self):
        return f"{self.test_number}: {self.test_name}"


class Medicine(models.Model):
    """药房库存：stock 永远不能为负（PositiveIntegerField 约束 + 条件扣减）"""

    class Unit(models.TextChoices):
        TABLET = 'tablet', 'Tablet'
        CAPSULE = 'capsule', 'Capsule'
        ML = 'ml', 'ml'
        MG = 'mg', 'mg'
        G = 'g', 'g'
        PIECE = 'piece', 'Piece'
        BOTTLE = 'bottle', 'Bottle'
        TUBE = 'tube', 'Tube'

    name = models.CharField(max_length=100, unique=True)
    generic_name = models.CharField(max_length=100, blank=True)
    price = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(0)])
    stock = models.PositiveIntegerField(default=0)
    minimum_stock = models.PositiveIntegerField(default=10)
    unit = models.CharField(max_length=10, choices=Unit.choices, default=Unit.TABLET)
    category = models.CharField(max_length=50, blank=True)
    manufacturer = models.CharField(max_length=100, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']

    @property
    def is_low_stock(self):
        return self.stock <= self.minimum_stock

    def __str__(self):
        return f"{self.name} (stock: {self.stock})"


class Prescription(models.Model):
    """处方：一个 Visit 最多一张，dispensed 之后药品明细不可再改"""
    visit = models.OneToOneField(Visit, on_delete=models.CASCADE, related_name='prescription')
    main_doctor = models.ForeignKey(User, on_delete=models.PROTECT, related_name='prescriptions')
    pharmacy_status = models.CharField(
        max_length=20, choices=PharmacyStatus.choices, default=PharmacyStatus.PENDING
    )
    dispensed_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='dispensed_prescriptions'
    )
    dispensed_at = models.DateTimeField(null=True, blank=True)
    notes = models.CharField(max_length=500, blank=True)
    total_cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    @property
    def prescription_number(self):
        return f"RX-{self.pk:06d}"

    def __str__(self):
        return f"{self.prescription_number} ({self.pharmacy_status})"


class PrescriptionMedicine(models.Model):
    """
    处方明细行

    quantity 是「剩余待发」数量，部分发药后递减；
    dispensed_quantity 累计已发数量；unit_price 是开方时的价格快照。
    """
    prescription = models.ForeignKey(Prescription, on_delete=models.CASCADE, related_name='medicines')
    name = models.CharField(max_length=100)
    dosage = models.CharField(max_length=50)
    duration = models.CharField(max_length=50)
    instruction = models.CharField(max_length=200)
    quantity = models.PositiveIntegerField()
    dispensed_quantity = models.PositiveIntegerField(default=0)
    unit_price = models.DecimalField(max_digits=10, decimal_places=2, default=0)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return f"{self.name} x{self.quantity}"


class Payment(models.Model):
    """收费记录：is_paid 一旦为 True 不能回退"""

    class PaymentType(models.TextChoices):
        CONSULTATION = 'consultation', 'Consultation'
        LAB = 'lab', 'Lab'
        MEDICINE = 'medicine', 'Medicine'
        OTHER = 'other', 'Other'

    class PaymentMethod(models.TextChoices):
        CASH = 'cash', 'Cash'
        CARD = 'card', 'Card'
        INSURANCE = 'insurance', 'Insurance'
        ONLINE = 'online', 'Online'

    visit = models.ForeignKey(Visit, on_delete=models.CASCADE, related_name='payments')
    amount = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])
    payment_type = models.CharField(max_length=20, choices=PaymentType.choices)
    payment_method = models.CharField(max_length=20, choices=PaymentMethod.choices, default=PaymentMethod.CASH)
    is_paid = models.BooleanField(default=False)
    received_by = models.ForeignKey(User, on_delete=models.PROTECT, related_name='received_payments')
    transaction_id = models.CharField(max_length=100, blank=True)
    notes = models.CharField(max_length=500, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    @property
    def payment_number(self):
        return f"PAY-{self.pk:06d}"

    def __str__(self):
        return f"{self.payment_number}: {self.amount} ({'paid' if self.is_paid else 'unpaid'})"
