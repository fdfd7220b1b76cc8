from django import forms
from django.utils.translation import gettext_lazy as _

from .models import Branch, Product


class AdjustStockForm(forms.Form):
    quantity_change = forms.IntegerField(label=_("Quantity Change"))
    notes = forms.CharField(max_length=255, required=False, label=_("Notes"))

    def clean_quantity_change(self):
        value = self.cleaned_data["quantity_change"]
        if value == 0:
            raise forms.ValidationError(_("The quantity change must not be zero."))
        return value


class InitializeStockForm(forms.Form):
    product = forms.ModelChoiceField(queryset=Product.objects.none(), label=_("Product"))
    branch = forms.ModelChoiceField(queryset=Branch.objects.none(), label=_("Branch"))
    quantity = forms.IntegerField(min_value=0, label=_("Quantity"))
    minimum_stock = forms.IntegerField(min_value=0, required=False, initial=0, label=_("Minimum Stock"))

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields["product"].queryset = Product.objects.filter(is_active=True).order_by("name")
        # branch scope is enforced by the permission guard, not by narrowing this list
        self.fields["branch"].queryset = Branch.objects.filter(is_active=True).order_by("name")

    def clean_minimum_stock(self):
        return self.cleaned_data.get("minimum_stock") or 0


class StockOpnameForm(forms.Form):
    """Physical counts posted as ``count_<product_id>=<quantity>`` pairs."""

    branch = forms.ModelChoiceField(queryset=Branch.objects.none(), label=_("Branch"))

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields["branch"].queryset = Branch.objects.filter(is_active=True).order_by("name")

    def clean(self):
        cleaned = super().clean()
        counts = {}
        for key, value in self.data.items():
            if not key.startswith("count_"):
                continue
            try:
                product_id = int(key.removeprefix("count_"))
                quantity = int(value)
            except (TypeError, ValueError):
                self.add_error(None, _("Invalid count entry: %(key)s") % {"key": key})
                continue
            if quantity < 0:
                self.add_error(None, _("Counted quantities cannot be negative."))
                continue
            counts[product_id] = quantity
        if not counts:
            self.add_error(None, _("Provide at least one counted product."))
        cleaned["counts"] = counts
        return cleaned
